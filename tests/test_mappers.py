from services.mappers import (
    map_user,
    map_users,
    map_library,
    map_item,
    map_season,
    map_episode,
    map_session_activity,
    map_playback_reporting_row,
    parse_jellyfin_date,
    primary_image_hash,
    ticks_to_seconds,
)


def test_parse_jellyfin_date_variants() -> None:
    # 2023-05-01T12:00:00Z
    expected = 1682942400
    assert parse_jellyfin_date("2023-05-01T12:00:00.1234567Z") == expected
    assert parse_jellyfin_date("2023-05-01T12:00:00Z") == expected
    assert parse_jellyfin_date("2023-05-01 12:00:00") == expected
    assert parse_jellyfin_date("2023-05-01T14:00:00+02:00") == expected
    assert parse_jellyfin_date(expected) == expected
    assert parse_jellyfin_date(expected * 1000) == expected
    assert parse_jellyfin_date("not a date") is None
    assert parse_jellyfin_date(None) is None
    assert parse_jellyfin_date("") is None


def test_ticks_to_seconds() -> None:
    assert ticks_to_seconds(72_000_000_000) == 7200
    assert ticks_to_seconds(None) == 0
    assert ticks_to_seconds("junk") == 0


def test_primary_image_hash() -> None:
    item = {
        "ImageTags": {"Primary": "tag1"},
        "ImageBlurHashes": {"Primary": {"tag1": "hash1", "tag2": "hash2"}},
    }
    assert primary_image_hash(item) == "hash1"
    assert primary_image_hash({"ImageTags": {}}) is None
    assert primary_image_hash({"ImageTags": {"Primary": "t"}}) is None


def test_map_user() -> None:
    mapped = map_user({
        "Id": " u1 ",
        "Name": "alice",
        "Policy": {"IsAdministrator": True},
        "PrimaryImageTag": "img",
        "LastActivityDate": "2023-05-01T12:00:00Z",
    })
    assert mapped == {
        "jellyfin_id": "u1",
        "name": "alice",
        "is_admin": True,
        "primary_image_tag": "img",
        "last_activity_at": 1682942400,
    }
    assert map_users([{"Id": "u2"}, {"Name": "nobody"}]) == []


def test_map_library() -> None:
    mapped = map_library({
        "Id": "lib1",
        "Name": "Movies",
        "CollectionType": "movies",
        "ImageTags": {"Primary": "abc"},
    })
    assert mapped["type"] == "movies"
    assert mapped["image_url"] == "/Items/lib1/Images/Primary?tag=abc"
    assert map_library({"Id": "x"}) is None


def test_map_item() -> None:
    mapped = map_item({
        "Id": "m1",
        "Name": "Heat",
        "Type": "Movie",
        "ParentId": "lib1",
        "ProductionYear": 1995,
        "RunTimeTicks": 102_000_000_000,
        "DateCreated": "2023-05-01T12:00:00.0000000Z",
        "MediaSources": [{"Size": 1000}, {"Size": "24"}, "junk"],
    }, 7)
    assert mapped["library_id"] == 7
    assert mapped["type"] == "Movie"
    assert mapped["production_year"] == 1995
    assert mapped["runtime_seconds"] == 10200
    assert mapped["size_bytes"] == 1024
    assert mapped["date_created"] == 1682942400


def test_map_season_and_episode() -> None:
    season = map_season({"Id": "s1", "SeriesId": "show", "Name": "Season 1", "IndexNumber": 1})
    assert season["series_id"] == "show"
    assert season["index_number"] == 1
    assert map_season({"Id": "s2"}) is None

    episode = map_episode({
        "Id": "e1",
        "SeriesId": "show",
        "SeasonId": "s1",
        "Name": "Pilot",
        "IndexNumber": 1,
        "ParentIndexNumber": 1,
    })
    assert episode["season_id"] == "s1"
    assert episode["parent_index_number"] == 1
    assert map_episode({"Id": "e2", "Name": "Orphan"}) is None


def test_map_session_activity_for_episode() -> None:
    session = {
        "Id": "sess1",
        "UserId": "u1",
        "UserName": "alice",
        "Client": "Jellyfin Web",
        "DeviceName": "Firefox",
        "PlayState": {"PlayMethod": "DirectPlay"},
        "NowPlayingItem": {
            "Id": "e1",
            "Type": "Episode",
            "Name": "Pilot",
            "SeriesId": "show",
            "SeriesName": "The Show",
            "SeasonId": "s1",
        },
    }
    row = map_session_activity(session, started_at=1000, play_duration=300)

    assert row["external_id"] == "sess1:e1:1000"
    assert row["source"] == "session"
    assert row["now_playing_item_id"] == "show"
    assert row["now_playing_item_name"] == "The Show : Pilot"
    assert row["episode_id"] == "e1"
    assert row["season_id"] == "s1"
    assert row["play_method"] == "DirectPlay"
    assert row["play_duration"] == 300
    assert row["activity_at"] == 1000


def test_map_session_activity_for_movie() -> None:
    row = map_session_activity(
        {"Id": "s", "UserId": "u1", "NowPlayingItem": {"Id": "m1", "Type": "Movie", "Name": "Heat"}},
        started_at=5,
        play_duration=-3,
    )
    assert row["now_playing_item_id"] == "m1"
    assert row["episode_id"] is None
    assert row["play_duration"] == 0
    assert map_session_activity({"Id": "s", "NowPlayingItem": {"Id": "m1"}}, 5, 5) is None


def test_map_playback_reporting_row() -> None:
    row = [
        42, "2023-05-01 12:00:00.0000000", "u1", "e1", "Episode",
        "The Show - s01e01 - Pilot", "Transcode (v:direct a:aac)",
        "Jellyfin Android", "Pixel", "1500",
    ]
    mapped = map_playback_reporting_row(
        row,
        episode_lookup={"e1": {"series_id": "show", "season_id": "s1"}},
        user_lookup={"u1": "alice"},
    )

    assert mapped["external_id"] == "playback_reporting:42"
    assert mapped["source"] == "playback_reporting"
    assert mapped["user_name"] == "alice"
    assert mapped["now_playing_item_id"] == "show"
    assert mapped["episode_id"] == "e1"
    assert mapped["season_id"] == "s1"
    assert mapped["play_method"] == "Transcode"
    assert mapped["play_duration"] == 1500
    assert mapped["activity_at"] == 1682942400


def test_map_playback_reporting_row_unknown_episode() -> None:
    row = [1, "2023-05-01 12:00:00", "u1", "e9", "Episode", "x", "DirectPlay", "c", "d", 60]
    mapped = map_playback_reporting_row(row)

    assert mapped["now_playing_item_id"] == "e9"
    assert mapped["episode_id"] == "e9"
    assert mapped["user_name"] is None
    assert map_playback_reporting_row(row[:5]) is None
