"""
Statistics aggregation service for computing analytics from
playback activity events.

Time windows are relative to ``now`` (epoch seconds, defaults to the current
time); hour/day buckets are computed in ``tz`` (defaults to UTC).
"""

from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any, Callable, Dict, List, Optional, Sequence

from sqlalchemy import case, func, or_, select
from sqlalchemy.orm import Session

from services.data_models import (
    User,
    Item,
    Library,
    Season,
    Episode,
    PlaybackActivity,
)

LAST_ACTIVITY_LIMIT = 15
WEEKDAYS = (
    "Sunday",
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
)


def _now(now: Optional[int]) -> int:
    return int(now) if now is not None else int(time.time())


def _plays_columns():
    return (
        func.count(PlaybackActivity.id).label("plays"),
        func.coalesce(func.sum(PlaybackActivity.play_duration), 0).label("seconds"),
    )


class StatsAggregator:
    @staticmethod
    def refresh_all_stats(session: Session) -> Dict[str, int]:
        """
        Refresh all denormalized statistics in a single operation.
        """
        play_counts = dict(
            session.query(
                PlaybackActivity.now_playing_item_id,
                func.count(PlaybackActivity.id)
            )
            .group_by(PlaybackActivity.now_playing_item_id)
            .all()
        )

        items_updated = 0
        for it in session.query(Item).all():
            new_count = int(play_counts.get(it.jellyfin_id, 0))
            if it.play_count != new_count:
                it.play_count = new_count
                items_updated += 1

        user_counts = dict(
            session.query(
                PlaybackActivity.user_id,
                func.count(PlaybackActivity.id)
            )
            .group_by(PlaybackActivity.user_id)
            .all()
        )
        users_updated = 0
        for u in session.query(User).all():
            new_total = int(user_counts.get(u.jellyfin_id, 0))
            if u.total_plays != new_total:
                u.total_plays = new_total
                users_updated += 1

        libs_updated = 0
        for lib in session.query(Library).all():
            item_count, total_plays = session.query(
                func.count(Item.id),
                func.coalesce(func.sum(Item.play_count), 0),
            ).filter(
                Item.library_id == lib.id,
                Item.archived == False
            ).one()

            series_ids = select(Item.jellyfin_id).where(
                Item.library_id == lib.id,
                Item.archived == False,
                func.lower(Item.type) == "series",
            )
            season_count = session.query(func.count(Season.id)).filter(
                Season.series_id.in_(series_ids),
                Season.archived == False,
            ).scalar()
            episode_count = session.query(func.count(Episode.id)).filter(
                Episode.series_id.in_(series_ids),
                Episode.archived == False,
            ).scalar()

            playback_seconds = session.query(
                func.coalesce(func.sum(PlaybackActivity.play_duration), 0)
            ).join(
                Item, PlaybackActivity.now_playing_item_id == Item.jellyfin_id
            ).filter(Item.library_id == lib.id).scalar()

            last = (
                session.query(Item.name)
                .select_from(PlaybackActivity)
                .join(Item, PlaybackActivity.now_playing_item_id == Item.jellyfin_id)
                .filter(Item.library_id == lib.id)
                .order_by(PlaybackActivity.activity_at.desc(), PlaybackActivity.id.desc())
                .first()
            )

            values = {
                "item_count": int(item_count or 0),
                "season_count": int(season_count or 0),
                "episode_count": int(episode_count or 0),
                "total_plays": int(total_plays or 0),
                "total_playback_seconds": int(playback_seconds or 0),
                "last_played_item_name": last[0] if last else None,
            }

            # Persist if changed
            changed = False
            for field, value in values.items():
                if getattr(lib, field) != value:
                    setattr(lib, field, value)
                    changed = True
            if changed:
                libs_updated += 1

        return {
            "libraries_updated": libs_updated,
            "items_updated": items_updated,
            "users_updated": users_updated,
        }

    @staticmethod
    def last_library_activity(
        session: Session,
        library_id: str,
        now: Optional[int] = None,
        limit: int = LAST_ACTIVITY_LIMIT,
    ) -> List[Dict[str, Any]]:
        """
        Most recent playback of each distinct (title, episode) pair in a
        library, newest first.

        Movies have no episode name and therefore collapse to one row per
        title. Season and episode numbers are only reported when the
        activity references a season.
        """
        now = _now(now)
        has_season = PlaybackActivity.season_id.isnot(None)
        rank = func.row_number().over(
            partition_by=(Item.name, Episode.name),
            order_by=(
                PlaybackActivity.activity_at.desc(),
                PlaybackActivity.id.desc(),
            ),
        ).label("row_rank")

        ranked = (
            session.query(
                Item.jellyfin_id.label("id"),
                PlaybackActivity.episode_id.label("episode_id"),
                Item.name.label("name"),
                Episode.name.label("episode_name"),
                case((has_season, Season.index_number), else_=None).label("season_number"),
                case((has_season, Episode.index_number), else_=None).label("episode_number"),
                Item.primary_image_hash.label("primary_image_hash"),
                PlaybackActivity.user_id.label("user_id"),
                PlaybackActivity.user_name.label("user_name"),
                PlaybackActivity.activity_at.label("activity_at"),
                PlaybackActivity.id.label("activity_pk"),
                rank,
            )
            .select_from(PlaybackActivity)
            .join(Item, Item.jellyfin_id == PlaybackActivity.now_playing_item_id)
            .join(Library, Library.id == Item.library_id)
            .outerjoin(Season, Season.jellyfin_id == PlaybackActivity.season_id)
            .outerjoin(Episode, Episode.jellyfin_id == PlaybackActivity.episode_id)
            .filter(Library.jellyfin_id == library_id)
            .subquery()
        )

        rows = (
            session.query(ranked)
            .filter(ranked.c.row_rank == 1)
            .order_by(ranked.c.activity_at.desc(), ranked.c.activity_pk.desc())
            .limit(limit)
            .all()
        )
        return [
            {
                "id": r.id,
                "episode_id": r.episode_id,
                "name": r.name,
                "episode_name": r.episode_name,
                "season_number": r.season_number,
                "episode_number": r.episode_number,
                "primary_image_hash": r.primary_image_hash,
                "user_id": r.user_id,
                "user_name": r.user_name,
                "activity_at": r.activity_at,
                "last_played": max(0, now - int(r.activity_at)),
            } for r in rows
        ]

    # Per-library play buckets

    @staticmethod
    def _active_libraries(session: Session) -> List[Dict[str, Any]]:
        return [
            {"id": jf_id, "name": name}
            for jf_id, name in session.query(Library.jellyfin_id, Library.name)
            .filter(Library.archived == False)
            .order_by(Library.name)
            .all()
        ]

    @staticmethod
    def _bucket_library_plays(
        session: Session,
        since: int,
        keys: Sequence[Any],
        key_fn: Callable[[datetime], Any],
        tz: Optional[tzinfo],
    ) -> Dict[str, Any]:
        """
        Count plays per library in each bucket, zero-filled.
        """
        tz = tz or timezone.utc
        libraries = StatsAggregator._active_libraries(session)
        lib_ids = [lib["id"] for lib in libraries]
        stats: Dict[Any, Dict[str, Any]] = {
            k: {"key": k, **{lib_id: 0 for lib_id in lib_ids}} for k in keys
        }

        rows = (
            session.query(PlaybackActivity.activity_at, Library.jellyfin_id)
            .select_from(PlaybackActivity)
            .join(Item, Item.jellyfin_id == PlaybackActivity.now_playing_item_id)
            .join(Library, Library.id == Item.library_id)
            .filter(
                PlaybackActivity.activity_at >= since,
                Library.archived == False,
            )
            .all()
        )
        for ts, lib_id in rows:
            bucket = stats.get(key_fn(datetime.fromtimestamp(int(ts), tz)))
            if bucket is not None and lib_id in bucket:
                bucket[lib_id] += 1

        return {"libraries": libraries, "stats": list(stats.values())}

    @staticmethod
    def views_by_hour(
        session: Session,
        days: int = 30,
        now: Optional[int] = None,
        tz: Optional[tzinfo] = None,
    ) -> Dict[str, Any]:
        """
        Plays per hour of day and library over the last ``days`` days.
        """
        since = _now(now) - days * 86400
        return StatsAggregator._bucket_library_plays(
            session, since, range(24), lambda dt: dt.hour, tz
        )

    @staticmethod
    def views_by_day_of_week(
        session: Session,
        days: int = 30,
        now: Optional[int] = None,
        tz: Optional[tzinfo] = None,
    ) -> Dict[str, Any]:
        since = _now(now) - days * 86400
        return StatsAggregator._bucket_library_plays(
            session,
            since,
            WEEKDAYS,
            lambda dt: WEEKDAYS[(dt.weekday() + 1) % 7],
            tz,
        )

    @staticmethod
    def views_over_time(
        session: Session,
        days: int = 30,
        now: Optional[int] = None,
        tz: Optional[tzinfo] = None,
    ) -> Dict[str, Any]:
        """
        Plays per calendar day and library, one entry per day ending today.
        """
        tz = tz or timezone.utc
        today = datetime.fromtimestamp(_now(now), tz).date()
        first = today - timedelta(days=days - 1)
        keys = [
            (first + timedelta(days=offset)).isoformat()
            for offset in range(days)
        ]
        # Window starts at local midnight of the first bucket
        since = int(datetime(first.year, first.month, first.day, tzinfo=tz).timestamp())
        return StatsAggregator._bucket_library_plays(
            session,
            since,
            keys,
            lambda dt: dt.date().isoformat(),
            tz,
        )

    # Rankings

    @staticmethod
    def most_viewed_libraries(
        session: Session,
        days: int = 30,
        now: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        since = _now(now) - days * 86400
        rows = (
            session.query(
                Library.jellyfin_id,
                Library.name,
                Library.type,
                *_plays_columns(),
            )
            .select_from(PlaybackActivity)
            .join(Item, Item.jellyfin_id == PlaybackActivity.now_playing_item_id)
            .join(Library, Library.id == Item.library_id)
            .filter(
                PlaybackActivity.activity_at >= since,
                Library.archived == False,
            )
            .group_by(Library.jellyfin_id, Library.name, Library.type)
            .order_by(func.count(PlaybackActivity.id).desc(), Library.name)
            .all()
        )
        return [
            {
                "id": r.jellyfin_id,
                "name": r.name,
                "type": r.type,
                "plays": int(r.plays),
                "total_playback_seconds": int(r.seconds or 0),
            } for r in rows
        ]

    @staticmethod
    def most_active_users(
        session: Session,
        days: int = 30,
        limit: int = 5,
        now: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Users ranked by number of plays.
        """
        since = _now(now) - days * 86400
        rows = (
            session.query(
                PlaybackActivity.user_id,
                func.max(PlaybackActivity.user_name).label("user_name"),
                *_plays_columns(),
            )
            .filter(PlaybackActivity.activity_at >= since)
            .group_by(PlaybackActivity.user_id)
            .order_by(func.count(PlaybackActivity.id).desc(), PlaybackActivity.user_id)
            .limit(limit)
            .all()
        )
        return [
            {
                "user_id": r.user_id,
                "user_name": r.user_name,
                "plays": int(r.plays),
                "total_playback_seconds": int(r.seconds or 0),
            } for r in rows
        ]

    @staticmethod
    def most_used_clients(
        session: Session,
        days: int = 30,
        limit: int = 5,
        now: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        since = _now(now) - days * 86400
        rows = (
            session.query(PlaybackActivity.client, *_plays_columns())
            .filter(PlaybackActivity.activity_at >= since)
            .group_by(PlaybackActivity.client)
            .order_by(func.count(PlaybackActivity.id).desc(), PlaybackActivity.client)
            .limit(limit)
            .all()
        )
        return [
            {"client": r.client or "Unknown", "plays": int(r.plays)}
            for r in rows
        ]

    @staticmethod
    def playback_methods(
        session: Session,
        days: int = 30,
        now: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Plays per playback method (DirectPlay, DirectStream, Transcode).
        """
        since = _now(now) - days * 86400
        rows = (
            session.query(PlaybackActivity.play_method, *_plays_columns())
            .filter(PlaybackActivity.activity_at >= since)
            .group_by(PlaybackActivity.play_method)
            .order_by(func.count(PlaybackActivity.id).desc())
            .all()
        )
        return [
            {
                "play_method": r.play_method or "Unknown",
                "plays": int(r.plays),
                "total_playback_seconds": int(r.seconds or 0),
            } for r in rows
        ]

    @staticmethod
    def most_viewed_items(
        session: Session,
        days: int = 30,
        item_type: str = "Movie",
        limit: int = 5,
        now: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        since = _now(now) - days * 86400
        rows = (
            session.query(
                Item.jellyfin_id,
                Item.name,
                Item.primary_image_hash,
                *_plays_columns(),
            )
            .select_from(PlaybackActivity)
            .join(Item, Item.jellyfin_id == PlaybackActivity.now_playing_item_id)
            .filter(
                PlaybackActivity.activity_at >= since,
                func.lower(Item.type) == (item_type or "").lower(),
            )
            .group_by(Item.jellyfin_id, Item.name, Item.primary_image_hash)
            .order_by(func.count(PlaybackActivity.id).desc(), Item.name)
            .limit(limit)
            .all()
        )
        return [
            {
                "id": r.jellyfin_id,
                "name": r.name,
                "primary_image_hash": r.primary_image_hash,
                "plays": int(r.plays),
                "total_playback_seconds": int(r.seconds or 0),
            } for r in rows
        ]

    # Single user / item

    @staticmethod
    def _totals(session: Session, *criteria) -> Dict[str, int]:
        plays, seconds = (
            session.query(*_plays_columns()).filter(*criteria).one()
        )
        return {
            "plays": int(plays or 0),
            "total_playback_seconds": int(seconds or 0),
        }

    @staticmethod
    def global_user_stats(
        session: Session,
        user_id: str,
        hours: int = 24,
        now: Optional[int] = None,
    ) -> Dict[str, int]:
        since = _now(now) - hours * 3600
        return StatsAggregator._totals(
            session,
            PlaybackActivity.user_id == user_id,
            PlaybackActivity.activity_at >= since,
        )

    @staticmethod
    def global_item_stats(
        session: Session,
        item_id: str,
        hours: int = 24,
        now: Optional[int] = None,
    ) -> Dict[str, int]:
        """
        Plays of an item in the window; a series also counts its episodes.
        """
        since = _now(now) - hours * 3600
        return StatsAggregator._totals(
            session,
            or_(
                PlaybackActivity.now_playing_item_id == item_id,
                PlaybackActivity.episode_id == item_id,
            ),
            PlaybackActivity.activity_at >= since,
        )

    @staticmethod
    def user_last_played(
        session: Session,
        user_id: str,
        limit: int = LAST_ACTIVITY_LIMIT,
        now: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        now = _now(now)
        rows = (
            session.query(PlaybackActivity)
            .filter(PlaybackActivity.user_id == user_id)
            .order_by(PlaybackActivity.activity_at.desc(), PlaybackActivity.id.desc())
            .limit(limit)
            .all()
        )
        out = []
        for a in rows:
            d = a.to_dict()
            d["last_played"] = max(0, now - int(a.activity_at))
            out.append(d)
        return out

    @staticmethod
    def library_overview(
        session: Session,
        include_archived: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Retrieve all libraries with their cached counts and play totals.
        """
        query = session.query(Library)
        if not include_archived:
            query = query.filter(Library.archived == False)
        return [lib.to_dict() for lib in query.order_by(Library.name).all()]

