from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from services.jellyfin import JellyfinClient
from services.repository import Repository
from services.mappers import (
    map_users,
    map_libraries,
    map_items,
    map_seasons,
    map_episodes,
    map_playback_reporting_row,
)

logger = logging.getLogger(__name__)

PLAYBACK_REPORTING_PLUGIN = "playback reporting"
FULL_SYNC_MAX_AGE_SECONDS = 24 * 3600


@dataclass
class SyncResult:
    """
    Structured result from a sync operation.
    """
    success: bool = True
    duration_ms: int = 0
    users_synced: int = 0
    libraries_synced: int = 0
    items_synced: int = 0
    seasons_synced: int = 0
    episodes_synced: int = 0
    activities_imported: int = 0
    errors: List[str] = field(default_factory=list)
    # Set when the run was refused because another sync held the lock
    busy: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "duration_ms": self.duration_ms,
            "users_synced": self.users_synced,
            "libraries_synced": self.libraries_synced,
            "items_synced": self.items_synced,
            "seasons_synced": self.seasons_synced,
            "episodes_synced": self.episodes_synced,
            "activities_imported": self.activities_imported,
            "errors": self.errors,
        }


def split_library_items(
    jf_items: List[Dict[str, Any]]
) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]], List[Dict[str, Any]]]:
    """
    Split a recursive library listing into (items, seasons, episodes).
    """
    items: List[Dict[str, Any]] = []
    seasons: List[Dict[str, Any]] = []
    episodes: List[Dict[str, Any]] = []
    for it in jf_items or []:
        t = it.get("Type")
        if t == "Season":
            seasons.append(it)
        elif t == "Episode":
            episodes.append(it)
        else:
            items.append(it)
    return items, seasons, episodes


@dataclass
class SyncService:
    jellyfin_client: JellyfinClient
    repository: Repository
    settings_service: Any = None
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False
    )

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def _run_task(
        self,
        name: str,
        execution_type: str,
        body: Callable[[SyncResult, int], None],
    ) -> SyncResult:
        """
        Run a sync body inside a task log entry. The body records counts and
        error strings on the result; an exception fails the whole task.
        Only one task runs at a time.
        """
        result = SyncResult()
        if not self._lock.acquire(blocking=False):
            result.success = False
            result.busy = True
            result.errors.append("Another sync is already running")
            return result

        try:
            start_time = time.time()
            task_id = self.repository.create_task_log(
                name=name,
                task_type="sync",
                execution_type=execution_type
            )
            logger.info("%s started", name)

            try:
                body(result, task_id)
            except Exception as exc:
                logger.exception("%s failed", name)
                result.errors.append(f"Unexpected error: {str(exc)}")

            result.success = len(result.errors) == 0
            result.duration_ms = int((time.time() - start_time) * 1000)

            self.repository.complete_task_log(
                task_id=task_id,
                result="SUCCESS" if result.success else "FAILED",
                log_data=result.to_dict(),
            )
        finally:
            self._lock.release()

        logger.info(
            "%s finished in %sms (%s errors)",
            name, result.duration_ms, len(result.errors),
        )
        return result

    def _refresh_stats(self, result: SyncResult) -> None:
        try:
            self.repository.refresh_play_stats()
        except Exception as exc:
            logger.exception("Failed to refresh play stats")
            result.errors.append(f"Failed to refresh play stats: {str(exc)}")

    def _tracked_libraries(self) -> List[Dict[str, Any]]:
        return [
            lib for lib in self.repository.list_libraries(include_archived=False)
            if lib.get("tracked")
        ]

    # -------------------------
    # Full sync
    # -------------------------

    def _sync_users(self, result: SyncResult) -> None:
        users = self.jellyfin_client.get_users()
        if not users:
            result.errors.append("Users sync failed: no users returned from Jellyfin")
            return

        mapped_users = map_users(users)
        result.users_synced = self.repository.upsert_users(mapped_users)

        # Archive users not in current list
        self.repository.archive_missing_users(
            [u["jellyfin_id"] for u in mapped_users]
        )

    def _sync_libraries(self, result: SyncResult) -> None:
        libraries = self.jellyfin_client.get_libraries()
        if not libraries:
            result.errors.append("Libraries sync failed: no libraries returned from Jellyfin")
            return

        mapped_libs = map_libraries(libraries)
        result.libraries_synced = self.repository.upsert_libraries(mapped_libs)

        # Archive libraries not in current list
        self.repository.archive_missing_libraries(
            [lib["jellyfin_id"] for lib in mapped_libs]
        )

    def _sync_library_items(
        self, lib: Dict[str, Any], result: SyncResult, task_id: int
    ) -> None:
        lib_jf_id = lib["jellyfin_id"]
        lib_internal_id = lib["id"]

        def report(percent: float) -> None:
            self.repository.update_task_progress(task_id, {
                "library": lib.get("name"),
                "progress": percent,
            })

        jf_items = self.jellyfin_client.get_items_from_parent_id(
            lib_jf_id, on_progress=report
        )
        if not jf_items:
            logger.warning("No items returned for library %s", lib.get("name"))
            return

        items, seasons, episodes = split_library_items(jf_items)

        mapped_items = map_items(items, lib_internal_id)
        result.items_synced += self.repository.upsert_items(mapped_items)
        self.repository.archive_missing_items(
            lib_internal_id, [it["jellyfin_id"] for it in mapped_items]
        )

        series_ids = [
            it["jellyfin_id"] for it in mapped_items
            if (it.get("type") or "").lower() == "series"
        ]
        mapped_seasons = map_seasons(seasons)
        mapped_episodes = map_episodes(episodes)
        result.seasons_synced += self.repository.upsert_seasons(mapped_seasons)
        result.episodes_synced += self.repository.upsert_episodes(mapped_episodes)
        self.repository.archive_missing_seasons(
            series_ids, [s["jellyfin_id"] for s in mapped_seasons]
        )
        self.repository.archive_missing_episodes(
            series_ids, [e["jellyfin_id"] for e in mapped_episodes]
        )

    def sync_full(self) -> SyncResult:
        """
        Perform a full sync: users -> libraries -> items, seasons and
        episodes of every tracked library -> statistics.
        """
        def body(result: SyncResult, task_id: int) -> None:
            # Phase 1: Sync users
            self._sync_users(result)

            # Phase 2: Sync libraries
            self._sync_libraries(result)

            # Phase 3: Sync items for each tracked library
            for lib in self._tracked_libraries():
                try:
                    self._sync_library_items(lib, result, task_id)
                except Exception as exc:
                    logger.exception("Items sync failed for %s", lib.get("name"))
                    result.errors.append(
                        f"Items sync failed for library "
                        f"{lib.get('name') or lib['jellyfin_id']}: {str(exc)}"
                    )

            # Phase 4: Refresh play statistics
            self._refresh_stats(result)

        return self._run_task("Full Sync", "full", body)

    # -------------------------
    # Partial sync
    # -------------------------

    def _sync_series_children(
        self, series_id: str, result: SyncResult
    ) -> None:
        seasons = self.jellyfin_client.get_seasons(series_id)
        result.seasons_synced += self.repository.upsert_seasons(map_seasons(seasons))
        for season in seasons:
            season_id = season.get("Id")
            if not season_id:
                continue
            episodes = self.jellyfin_client.get_episodes(series_id, season_id)
            result.episodes_synced += self.repository.upsert_episodes(
                map_episodes(episodes)
            )

    def sync_partial(self, limit: int = 20) -> SyncResult:
        """
        Pull recently added items of every tracked library, plus the seasons
        and episodes of recently added series. Nothing is archived.
        """
        def body(result: SyncResult, task_id: int) -> None:
            for lib in self._tracked_libraries():
                recent = self.jellyfin_client.get_recently_added(
                    library_id=lib["jellyfin_id"], limit=limit
                )
                items, _, episodes = split_library_items(recent)

                mapped_items = map_items(items, lib["id"])
                result.items_synced += self.repository.upsert_items(mapped_items)

                series_ids = {
                    it["jellyfin_id"] for it in mapped_items
                    if (it.get("type") or "").lower() == "series"
                }
                series_ids.update(
                    ep.get("SeriesId") for ep in episodes if ep.get("SeriesId")
                )
                for series_id in sorted(series_ids):
                    self._sync_series_children(series_id, result)

            self._refresh_stats(result)

        return self._run_task("Partial Sync", "partial", body)

    # -------------------------
    # Playback Reporting import
    # -------------------------

    def _has_playback_reporting(self) -> bool:
        return any(
            PLAYBACK_REPORTING_PLUGIN in str(p.get("Name") or "").lower()
            for p in self.jellyfin_client.get_installed_plugins()
        )

    def import_playback_reporting(self) -> SyncResult:
        """
        Import history recorded by the Playback Reporting plugin, starting
        after the last imported rowid.
        """
        def body(result: SyncResult, task_id: int) -> None:
            if not self._has_playback_reporting():
                result.errors.append("Playback Reporting plugin is not installed")
                return

            last_rowid: Optional[int] = None
            if self.settings_service is not None:
                last_rowid = self.settings_service.get_last_playback_import_rowid()

            query = "SELECT rowid, * FROM PlaybackActivity"
            if last_rowid:
                query += f" WHERE rowid > {int(last_rowid)}"
            query += " ORDER BY rowid"

            rows = self.jellyfin_client.stats_submit_custom_query(query)
            rows = [r for r in rows if isinstance(r, (list, tuple)) and len(r) >= 10]
            if not rows:
                return

            episode_lookup = self.repository.episode_lookup(
                str(r[3]) for r in rows if r[4] == "Episode"
            )
            user_lookup = self.repository.user_lookup()

            mapped = [
                m for m in (
                    map_playback_reporting_row(r, episode_lookup, user_lookup)
                    for r in rows
                ) if m
            ]
            result.activities_imported = self.repository.insert_playback_activity(mapped)

            max_rowid = max(int(r[0]) for r in rows)
            if self.settings_service is not None:
                self.settings_service.set_last_playback_import_rowid(max_rowid)

            if result.activities_imported:
                self._refresh_stats(result)

        return self._run_task("Playback Reporting Import", "import", body)

    # -------------------------
    # Scheduled
    # -------------------------

    def sync_periodic(self) -> SyncResult:
        """
        Scheduled sync: a full sync when the last successful one is older
        than a day, a partial sync otherwise.
        """
        last_full = self.repository.get_latest_task(
            execution_type="full", result="SUCCESS"
        )
        now = int(time.time())
        if not last_full or now - int(last_full["started_at"]) >= FULL_SYNC_MAX_AGE_SECONDS:
            return self.sync_full()
        return self.sync_partial()
