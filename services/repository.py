from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import List, Dict, Any, Iterable, Optional, Sequence
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from services.data_models import (
    Base,
    User,
    Library,
    Item,
    Season,
    Episode,
    PlaybackActivity,
    TaskLog
)

CHUNK_SIZE = 500

USER_FIELDS = ("name", "is_admin", "primary_image_tag", "last_activity_at")
LIBRARY_FIELDS = ("name", "type", "image_url")
ITEM_FIELDS = (
    "library_id",
    "parent_id",
    "name",
    "type",
    "primary_image_hash",
    "production_year",
    "runtime_seconds",
    "size_bytes",
    "date_created",
)
SEASON_FIELDS = ("series_id", "name", "index_number")
EPISODE_FIELDS = (
    "series_id",
    "season_id",
    "name",
    "index_number",
    "parent_index_number",
    "runtime_seconds",
    "size_bytes",
    "date_created",
)
ACTIVITY_FIELDS = (
    "source",
    "user_id",
    "user_name",
    "now_playing_item_id",
    "now_playing_item_name",
    "season_id",
    "episode_id",
    "client",
    "device_name",
    "play_method",
    "play_duration",
    "activity_at",
)


def _chunks(values: Sequence[Any], size: int = CHUNK_SIZE) -> Iterable[Sequence[Any]]:
    for i in range(0, len(values), size):
        yield values[i:i + size]


@dataclass
class Repository:
    """
    Data access layer for all Finstat entities.
    """

    database_url: str = "sqlite:///finstat_data.db"

    def __post_init__(self) -> None:
        self.engine = create_engine(self.database_url, future=True)
        self.SessionLocal = sessionmaker(
            bind=self.engine, expire_on_commit=False
        )
        Base.metadata.create_all(self.engine)

    @contextmanager
    def _session(self):
        """Context manager for database sessions with auto-commit."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # Generic helpers

    def _upsert(
        self,
        model,
        rows: Optional[List[Dict[str, Any]]],
        fields: Sequence[str],
    ) -> int:
        """
        Upsert rows by jellyfin_id, copying the given fields and clearing
        the archived flag.
        """
        rows = [r for r in rows or [] if r.get("jellyfin_id")]
        if not rows:
            return 0

        with self._session() as session:
            for chunk in _chunks(rows):
                ids = list({r["jellyfin_id"] for r in chunk})
                existing = {
                    obj.jellyfin_id: obj
                    for obj in session.query(model)
                    .filter(model.jellyfin_id.in_(ids))
                    .all()
                }
                for data in chunk:
                    obj = existing.get(data["jellyfin_id"])
                    if obj is None:
                        obj = model(jellyfin_id=data["jellyfin_id"])
                        session.add(obj)
                        existing[data["jellyfin_id"]] = obj
                    for field in fields:
                        if field in data:
                            setattr(obj, field, data[field])
                    obj.archived = False
                session.flush()

        return len(rows)

    def _archive_missing(
        self, model, active_jellyfin_ids: Iterable[str], *criteria
    ) -> int:
        """
        Mark rows matching criteria as archived if not in the active list.
        An empty active list archives nothing.
        """
        active = set(active_jellyfin_ids or [])
        if not active:
            return 0

        with self._session() as session:
            current = [
                jf_id for (jf_id,) in session.query(model.jellyfin_id)
                .filter(model.archived == False, *criteria)
                .all()
            ]
            missing = [jf_id for jf_id in current if jf_id not in active]
            for chunk in _chunks(missing):
                session.query(model).filter(
                    model.jellyfin_id.in_(list(chunk))
                ).update({"archived": True}, synchronize_session=False)
            return len(missing)

    # Users

    def upsert_users(self, user_dicts: List[Dict[str, Any]]) -> int:
        """
        Upsert users by jellyfin_id. Updates name and admin status.
        """
        return self._upsert(User, user_dicts, USER_FIELDS)

    def archive_missing_users(
        self, active_jellyfin_ids: List[str]
    ) -> int:
        """
        Mark users as archived if not in active list.
        """
        return self._archive_missing(User, active_jellyfin_ids)

    def list_users(
        self, include_archived: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Retrieve all users as dictionaries.
        """
        with self._session() as session:
            query = session.query(User)
            if not include_archived:
                query = query.filter(User.archived == False)
            return [u.to_dict() for u in query.order_by(User.name).all()]

    def user_lookup(self) -> Dict[str, str]:
        """
        Map of jellyfin user id to user name, archived users included.
        """
        with self._session() as session:
            return dict(session.query(User.jellyfin_id, User.name).all())

    # Libraries

    def upsert_libraries(
        self, library_dicts: List[Dict[str, Any]]
    ) -> int:
        """
        Upsert libraries by jellyfin_id. New libraries start tracked.
        """
        return self._upsert(Library, library_dicts, LIBRARY_FIELDS)

    def archive_missing_libraries(
        self, active_jellyfin_ids: List[str]
    ) -> int:
        """
        Mark libraries as archived if not in active list.
        """
        return self._archive_missing(Library, active_jellyfin_ids)

    def list_libraries(
        self, include_archived: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Retrieve all libraries as dictionaries.
        """
        with self._session() as session:
            query = session.query(Library)
            if not include_archived:
                query = query.filter(Library.archived == False)
            return [lib.to_dict() for lib in query.order_by(Library.name).all()]

    def set_library_tracked(
        self, jellyfin_id: str, tracked: bool
    ) -> Optional[Dict[str, Any]]:
        """
        Update the tracked flag for a library.
        """
        with self._session() as session:
            lib = session.query(Library).filter_by(
                jellyfin_id=jellyfin_id
            ).first()
            if not lib:
                return None

            lib.tracked = bool(tracked)
            return lib.to_dict()

    # Items, seasons, episodes

    def upsert_items(self, item_dicts: List[Dict[str, Any]]) -> int:
        """
        Upsert media items by jellyfin_id.
        """
        rows = [d for d in item_dicts or [] if d.get("library_id") is not None]
        return self._upsert(Item, rows, ITEM_FIELDS)

    def archive_missing_items(
        self, library_id: int, active_jellyfin_ids: List[str]
    ) -> int:
        """
        Mark items as archived if not in active list for a library.
        """
        return self._archive_missing(
            Item, active_jellyfin_ids, Item.library_id == library_id
        )

    def list_items(
        self, library_id: int, include_archived: bool = False
    ) -> List[Dict[str, Any]]:
        with self._session() as session:
            query = session.query(Item).filter(Item.library_id == library_id)
            if not include_archived:
                query = query.filter(Item.archived == False)
            return [it.to_dict() for it in query.order_by(Item.name).all()]

    def upsert_seasons(self, season_dicts: List[Dict[str, Any]]) -> int:
        return self._upsert(Season, season_dicts, SEASON_FIELDS)

    def upsert_episodes(self, episode_dicts: List[Dict[str, Any]]) -> int:
        return self._upsert(Episode, episode_dicts, EPISODE_FIELDS)

    def archive_missing_seasons(
        self, series_ids: List[str], active_jellyfin_ids: List[str]
    ) -> int:
        """
        Archive seasons of the given series that Jellyfin no longer reports.
        """
        if not series_ids:
            return 0
        return self._archive_missing(
            Season, active_jellyfin_ids, Season.series_id.in_(series_ids)
        )

    def archive_missing_episodes(
        self, series_ids: List[str], active_jellyfin_ids: List[str]
    ) -> int:
        """
        Archive episodes of the given series that Jellyfin no longer reports.
        """
        if not series_ids:
            return 0
        return self._archive_missing(
            Episode, active_jellyfin_ids, Episode.series_id.in_(series_ids)
        )

    def episode_lookup(
        self, episode_ids: Iterable[str]
    ) -> Dict[str, Dict[str, Any]]:
        """
        Map episode ids to their series and season ids.
        """
        ids = list({e for e in episode_ids if e})
        out: Dict[str, Dict[str, Any]] = {}
        if not ids:
            return out

        with self._session() as session:
            for chunk in _chunks(ids):
                rows = (
                    session.query(
                        Episode.jellyfin_id, Episode.series_id, Episode.season_id
                    )
                    .filter(Episode.jellyfin_id.in_(list(chunk)))
                    .all()
                )
                for jf_id, series_id, season_id in rows:
                    out[jf_id] = {"series_id": series_id, "season_id": season_id}
        return out

    # Playback Activity

    def insert_playback_activity(
        self, event_dicts: List[Dict[str, Any]]
    ) -> int:
        """
        Insert playback activity records, skipping ones already stored.
        """
        events = [
            e for e in event_dicts or []
            if e.get("external_id")
            and e.get("user_id")
            and e.get("now_playing_item_id")
            and e.get("activity_at") is not None
        ]
        if not events:
            return 0

        count = 0
        with self._session() as session:
            seen: set = set()
            for chunk in _chunks(events):
                ids = [e["external_id"] for e in chunk]
                seen.update(
                    ext for (ext,) in session.query(PlaybackActivity.external_id)
                    .filter(PlaybackActivity.external_id.in_(ids))
                    .all()
                )
                for event in chunk:
                    if event["external_id"] in seen:
                        # Already synced, skip
                        continue
                    seen.add(event["external_id"])

                    activity = PlaybackActivity(external_id=event["external_id"])
                    for field in ACTIVITY_FIELDS:
                        if field in event:
                            setattr(activity, field, event[field])
                    session.add(activity)
                    count += 1
                session.flush()

        return count

    def count_playback_activity(self) -> int:
        with self._session() as session:
            return session.query(PlaybackActivity).count()

    # Statistics

    def refresh_play_stats(self) -> Dict[str, int]:
        """
        Refresh all denormalized play count statistics from
        PlaybackActivity records.
        """
        from services.stats_aggregator import StatsAggregator

        with self._session() as session:
            return StatsAggregator.refresh_all_stats(session)

    def run_stats(self, query: str, **kwargs: Any) -> Any:
        """
        Run one of the StatsAggregator queries in a fresh session.

        :param query: Name of the StatsAggregator method
        :param kwargs: Arguments forwarded to it
        """
        from services.stats_aggregator import StatsAggregator

        fn = getattr(StatsAggregator, query, None)
        if query.startswith("_") or not callable(fn):
            raise ValueError(f"Unknown statistics query: {query}")

        with self._session() as session:
            return fn(session, **kwargs)

    def get_last_library_activity(
        self, library_id: str, **kwargs: Any
    ) -> List[Dict[str, Any]]:
        """
        Most recent distinct playback per title in a library.
        """
        return self.run_stats(
            "last_library_activity", library_id=library_id, **kwargs
        )

    # Task Logging

    def create_task_log(
        self, name: str, task_type: str, execution_type: str
    ) -> int:
        """
        Create a new task log entry with RUNNING status.
        """
        now = int(time.time())
        with self._session() as session:
            task = TaskLog(
                name=name,
                type=task_type,
                execution_type=execution_type,
                started_at=now,
                result="RUNNING",
                duration_ms=0,
            )
            session.add(task)
            session.flush()
            return task.id

    def update_task_progress(
        self, task_id: int, log_data: Dict[str, Any]
    ) -> None:
        """
        Store intermediate progress on a running task.
        """
        with self._session() as session:
            task = session.query(TaskLog).filter_by(id=task_id).first()
            if task:
                task.log_json = json.dumps(log_data)

    def complete_task_log(
        self,
        task_id: int,
        result: str,
        log_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Mark a task log as complete with result.
        """
        now = int(time.time())
        with self._session() as session:
            task = session.query(TaskLog).filter_by(id=task_id).first()
            if not task:
                return

            task.finished_at = now
            task.duration_ms = (now - task.started_at) * 1000
            task.result = result

            if log_data:
                task.log_json = json.dumps(log_data)

    def get_latest_task(
        self,
        task_type: Optional[str] = "sync",
        execution_type: Optional[str] = None,
        result: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Retrieve the most recent task log entry matching the filters.
        """
        with self._session() as session:
            query = session.query(TaskLog)
            if task_type:
                query = query.filter(TaskLog.type == task_type)
            if execution_type:
                query = query.filter(TaskLog.execution_type == execution_type)
            if result:
                query = query.filter(TaskLog.result == result)
            task = query.order_by(
                TaskLog.started_at.desc(), TaskLog.id.desc()
            ).first()
            return task.to_dict() if task else None

    def get_latest_sync_task(
        self
    ) -> Optional[Dict[str, Any]]:
        """
        Retrieve the most recent sync task log entry.
        """
        return self.get_latest_task(task_type="sync")
