from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Sequence

TICKS_PER_SECOND = 10_000_000
FRACTION_RE = re.compile(r"\.(\d+)")


def parse_jellyfin_date(value: Any) -> Optional[int]:
    """
    Convert a Jellyfin timestamp to epoch seconds.

    Jellyfin emits up to 7 fractional digits ("2023-05-01T12:00:00.1234567Z"),
    which datetime.fromisoformat does not accept on every Python version.
    Naive timestamps are treated as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        ts = int(value)
        if ts > 10**12: # Milliseconds
            ts = int(ts / 1000)
        return ts

    s = str(value).strip().replace("Z", "+00:00")
    s = FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), s, count=1)
    try:
        dt = datetime.fromisoformat(s)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def ticks_to_seconds(ticks: Any) -> int:
    """
    .NET ticks (100ns) to whole seconds.
    """
    try:
        return int(int(ticks or 0) / TICKS_PER_SECOND)
    except (TypeError, ValueError):
        return 0


def _media_size(jf_item: Dict[str, Any]) -> int:
    size_bytes = 0
    for src in jf_item.get("MediaSources") or []:
        if not isinstance(src, dict):
            continue
        try:
            size_bytes += int(src.get("Size") or 0)
        except (TypeError, ValueError):
            continue
    return size_bytes


def _to_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def primary_image_hash(jf_item: Dict[str, Any]) -> Optional[str]:
    """
    Blur hash of the item's primary image, if Jellyfin computed one.
    """
    tag = (jf_item.get("ImageTags") or {}).get("Primary")
    if not tag:
        return None
    hashes = (jf_item.get("ImageBlurHashes") or {}).get("Primary") or {}
    return hashes.get(tag)


def map_user(jf_user: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Transform a Jellyfin user object into a User table row dict.
    """
    jf_id = (jf_user.get("Id") or "").strip()
    name = (jf_user.get("Name") or "").strip()

    if not jf_id or not name:
        return None

    return {
        "jellyfin_id": jf_id,
        "name": name,
        "is_admin": bool((jf_user.get("Policy") or {}).get("IsAdministrator", False)),
        "primary_image_tag": jf_user.get("PrimaryImageTag"),
        "last_activity_at": parse_jellyfin_date(jf_user.get("LastActivityDate")),
    }


def map_users(jf_users: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Transform a list of Jellyfin users into User table row dicts.
    """
    results = []
    for user in jf_users:
        mapped = map_user(user)
        if mapped:
            results.append(mapped)
    return results


def map_library(jf_library: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Transform a Jellyfin library/media folder into a Library table row
    dict.
    """
    jf_id = (jf_library.get("Id") or "").strip()
    name = (
        jf_library.get("Name")
        or jf_library.get("Path")
        or ""
    ).strip()

    if not jf_id or not name:
        return None

    lib_type = jf_library.get("CollectionType") or jf_library.get("Type")

    primary_tag = (jf_library.get("ImageTags") or {}).get("Primary")
    image_url = None
    if primary_tag:
        image_url = (
            f"/Items/{jf_id}/Images/Primary?tag={primary_tag}"
        )

    return {
        "jellyfin_id": jf_id,
        "name": name,
        "type": lib_type,
        "image_url": image_url,
    }


def map_libraries(
    jf_libraries: List[Dict[str, Any]]
) -> List[Dict[str, Any]]:
    """
    Transform a list of Jellyfin libraries into Library table row dicts.
    """
    results = []
    for lib in jf_libraries:
        mapped = map_library(lib)
        if mapped:
            results.append(mapped)
    return results


def map_item(
    jf_item: Dict[str, Any],
    library_internal_id: int
) -> Optional[Dict[str, Any]]:
    """
    Transform a Jellyfin media item into an Item table row dict.
    """
    jf_id = (jf_item.get("Id") or "").strip()
    name = (jf_item.get("Name") or "").strip()

    if not jf_id or not name:
        return None

    return {
        "jellyfin_id": jf_id,
        "library_id": library_internal_id,
        "parent_id": jf_item.get("ParentId"),
        "name": name,
        "type": jf_item.get("Type") or jf_item.get("MediaType"),
        "primary_image_hash": primary_image_hash(jf_item),
        "production_year": _to_int(jf_item.get("ProductionYear")),
        "runtime_seconds": ticks_to_seconds(jf_item.get("RunTimeTicks")),
        "size_bytes": _media_size(jf_item),
        "date_created": parse_jellyfin_date(jf_item.get("DateCreated")),
    }

def map_items(
    jf_items: List[Dict[str, Any]],
    library_internal_id: int
) -> List[Dict[str, Any]]:
    """
    Transform a list of Jellyfin items into Item table row dicts.
    """
    results: List[Dict[str, Any]] = []
    for it in jf_items or []:
        mapped = map_item(it, library_internal_id)
        if mapped:
            results.append(mapped)
    return results


def map_season(jf_season: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    jf_id = (jf_season.get("Id") or "").strip()
    series_id = (jf_season.get("SeriesId") or jf_season.get("ParentId") or "").strip()
    if not jf_id or not series_id:
        return None
    return {
        "jellyfin_id": jf_id,
        "series_id": series_id,
        "name": jf_season.get("Name"),
        "index_number": _to_int(jf_season.get("IndexNumber")),
    }


def map_seasons(jf_seasons: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [m for m in (map_season(s) for s in jf_seasons or []) if m]


def map_episode(jf_episode: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    jf_id = (jf_episode.get("Id") or "").strip()
    series_id = (jf_episode.get("SeriesId") or "").strip()
    if not jf_id or not series_id:
        return None
    return {
        "jellyfin_id": jf_id,
        "series_id": series_id,
        "season_id": jf_episode.get("SeasonId") or jf_episode.get("ParentId"),
        "name": jf_episode.get("Name"),
        "index_number": _to_int(jf_episode.get("IndexNumber")),
        "parent_index_number": _to_int(jf_episode.get("ParentIndexNumber")),
        "runtime_seconds": ticks_to_seconds(jf_episode.get("RunTimeTicks")),
        "size_bytes": _media_size(jf_episode),
        "date_created": parse_jellyfin_date(jf_episode.get("DateCreated")),
    }


def map_episodes(jf_episodes: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [m for m in (map_episode(e) for e in jf_episodes or []) if m]


def map_session_activity(
    session: Dict[str, Any],
    started_at: int,
    play_duration: int,
) -> Optional[Dict[str, Any]]:
    """
    Transform a finished session watch into a PlaybackActivity table row
    dict.

    :param session: Last seen Jellyfin session object
    :param started_at: Epoch seconds when the watch was first seen
    :param play_duration: Unpaused seconds accumulated while watching
    """
    item = session.get("NowPlayingItem") or {}
    user_id = (session.get("UserId") or "").strip()
    item_id = (item.get("Id") or "").strip()
    if not user_id or not item_id:
        return None

    is_episode = item.get("Type") == "Episode" and item.get("SeriesId")
    if is_episode:
        now_playing_id = item["SeriesId"]
        item_name = f"{item.get('SeriesName') or ''} : {item.get('Name') or ''}"
        episode_id = item_id
        season_id = item.get("SeasonId")
    else:
        now_playing_id = item_id
        item_name = item.get("Name")
        episode_id = None
        season_id = None

    play_state = session.get("PlayState") or {}
    return {
        "external_id": f"{session.get('Id') or 'session'}:{item_id}:{started_at}",
        "source": "session",
        "user_id": user_id,
        "user_name": session.get("UserName"),
        "now_playing_item_id": now_playing_id,
        "now_playing_item_name": item_name,
        "season_id": season_id,
        "episode_id": episode_id,
        "client": session.get("Client"),
        "device_name": session.get("DeviceName"),
        "play_method": play_state.get("PlayMethod"),
        "play_duration": max(0, int(play_duration)),
        "activity_at": int(started_at),
    }


def map_playback_reporting_row(
    row: Sequence[Any],
    episode_lookup: Optional[Dict[str, Dict[str, Any]]] = None,
    user_lookup: Optional[Dict[str, str]] = None,
) -> Optional[Dict[str, Any]]:
    """
    Transform a Playback Reporting plugin row into a PlaybackActivity table
    row dict.

    Row layout of ``SELECT rowid, * FROM PlaybackActivity``: rowid,
    DateCreated, UserId, ItemId, ItemType, ItemName, PlaybackMethod,
    ClientName, DeviceName, PlayDuration.
    """
    if not isinstance(row, (list, tuple)) or len(row) < 10:
        return None

    rowid, date_created, user_id, item_id, item_type, item_name = row[:6]
    play_method, client, device, duration = row[6:10]

    user_id = str(user_id or "").strip()
    item_id = str(item_id or "").strip()
    activity_at = parse_jellyfin_date(date_created)
    if not user_id or not item_id or activity_at is None:
        return None

    now_playing_id = item_id
    episode_id = None
    season_id = None
    if item_type == "Episode":
        episode_id = item_id
        ep = (episode_lookup or {}).get(item_id)
        if ep:
            now_playing_id = ep.get("series_id") or item_id
            season_id = ep.get("season_id")

    method = str(play_method or "").split(" (", 1)[0].strip() or None

    return {
        "external_id": f"playback_reporting:{rowid}",
        "source": "playback_reporting",
        "user_id": user_id,
        "user_name": (user_lookup or {}).get(user_id),
        "now_playing_item_id": now_playing_id,
        "now_playing_item_name": item_name,
        "season_id": season_id,
        "episode_id": episode_id,
        "client": client,
        "device_name": device,
        "play_method": method,
        "play_duration": _to_int(duration) or 0,
        "activity_at": activity_at,
    }
