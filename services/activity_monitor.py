"""
Live session monitoring.

Jellyfin only reports what is playing right now, so playback history is
built by polling /sessions and remembering every (session, item) pair until
it disappears.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from services.mappers import map_session_activity

logger = logging.getLogger(__name__)

DEFAULT_MIN_PLAY_SECONDS = 30


@dataclass
class Watch:
    """
    One item being played in one session.
    """
    session: Dict[str, Any]
    started_at: int
    last_seen: int
    play_seconds: int = 0
    paused: bool = False


def _watch_key(session: Dict[str, Any]) -> Optional[Tuple[str, str]]:
    session_id = session.get("Id")
    item_id = (session.get("NowPlayingItem") or {}).get("Id")
    if not session_id or not item_id:
        return None
    return session_id, item_id


class ActivityMonitor:
    """
    Turns polled Jellyfin sessions into PlaybackActivity rows.

    Play time only accumulates while the session is not paused. A watch is
    written when its pair is no longer reported; watches shorter than
    ``min_play_seconds`` are discarded.
    """

    def __init__(
        self,
        jellyfin_client,
        repository,
        min_play_seconds: int = DEFAULT_MIN_PLAY_SECONDS,
    ):
        self.jellyfin_client = jellyfin_client
        self.repository = repository
        self.min_play_seconds = int(min_play_seconds)
        self._watchdog: Dict[Tuple[str, str], Watch] = {}
        self._lock = threading.Lock()

    @property
    def active_watches(self) -> List[Watch]:
        with self._lock:
            return list(self._watchdog.values())

    def poll(self, now: Optional[int] = None) -> int:
        """
        Poll sessions once.

        :param now: Epoch seconds of this poll, defaults to the current time
        :returns int: Number of playback activity rows written
        """
        now = int(now) if now is not None else int(time.time())

        current: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for session in self.jellyfin_client.get_sessions():
            key = _watch_key(session)
            if key:
                current[key] = session

        with self._lock:
            for key, session in current.items():
                paused = bool((session.get("PlayState") or {}).get("IsPaused"))
                watch = self._watchdog.get(key)
                if watch is None:
                    self._watchdog[key] = Watch(
                        session=session,
                        started_at=now,
                        last_seen=now,
                        paused=paused,
                    )
                    continue

                if not watch.paused:
                    watch.play_seconds += max(0, now - watch.last_seen)
                watch.last_seen = now
                watch.paused = paused
                watch.session = session

            ended = [
                self._watchdog.pop(key)
                for key in list(self._watchdog)
                if key not in current
            ]

        return self._record(ended)

    def _record(self, ended: List[Watch]) -> int:
        rows = []
        for watch in ended:
            if watch.play_seconds < self.min_play_seconds:
                logger.debug(
                    "Dropping short watch of %s (%ss)",
                    (watch.session.get("NowPlayingItem") or {}).get("Name"),
                    watch.play_seconds,
                )
                continue
            row = map_session_activity(
                watch.session, watch.started_at, watch.play_seconds
            )
            if row:
                rows.append(row)

        if not rows:
            return 0

        inserted = self.repository.insert_playback_activity(rows)
        logger.info("Recorded %s playback activities", inserted)
        if inserted:
            self.repository.refresh_play_stats()
        return inserted
