from datetime import timedelta, timezone

import pytest

from services.repository import Repository

# 2023-05-01T12:00:00Z, a Monday
T0 = 1682942400
NOW = T0 + 3600


def activity(external_id: str, item_id: str, at: int, **overrides):
    row = {
        "external_id": external_id,
        "source": "session",
        "user_id": "u1",
        "user_name": "alice",
        "now_playing_item_id": item_id,
        "client": "Jellyfin Web",
        "play_method": "DirectPlay",
        "play_duration": 100,
        "activity_at": at,
    }
    row.update(overrides)
    return row


@pytest.fixture()
def repo() -> Repository:
    repo = Repository(database_url="sqlite:///:memory:")
    repo.upsert_libraries([
        {"jellyfin_id": "tv", "name": "Shows", "type": "tvshows"},
        {"jellyfin_id": "movies", "name": "Movies", "type": "movies"},
    ])
    ids = {l["jellyfin_id"]: l["id"] for l in repo.list_libraries()}
    repo.upsert_items([
        {"jellyfin_id": "show", "library_id": ids["tv"], "name": "The Show",
         "type": "Series", "primary_image_hash": "hash-show"},
        {"jellyfin_id": "m1", "library_id": ids["movies"], "name": "Heat", "type": "Movie"},
        {"jellyfin_id": "m2", "library_id": ids["movies"], "name": "Ronin", "type": "Movie"},
    ])
    repo.upsert_seasons([
        {"jellyfin_id": "se1", "series_id": "show", "name": "Season 1", "index_number": 1},
    ])
    repo.upsert_episodes([
        {"jellyfin_id": "e1", "series_id": "show", "season_id": "se1",
         "name": "Pilot", "index_number": 1, "parent_index_number": 1},
        {"jellyfin_id": "e2", "series_id": "show", "season_id": "se1",
         "name": "Second", "index_number": 2, "parent_index_number": 1},
    ])
    repo.insert_playback_activity([
        activity("a1", "show", T0 - 300, episode_id="e1", season_id="se1"),
        activity("a2", "show", T0 - 100, episode_id="e1", season_id="se1",
                 user_id="u2", user_name="bob", client="Android"),
        activity("a3", "show", T0 - 200, episode_id="e2", season_id="se1"),
        activity("a4", "m1", T0, play_method="Transcode"),
        activity("a5", "m1", T0 - 50),
        activity("old", "m2", T0 - 40 * 86400),
    ])
    repo.refresh_play_stats()
    return repo


def test_last_library_activity_keeps_latest_per_episode(repo) -> None:
    rows = repo.get_last_library_activity("tv", now=NOW)

    assert [(r["name"], r["episode_name"]) for r in rows] == [
        ("The Show", "Pilot"),
        ("The Show", "Second"),
    ]
    latest = rows[0]
    assert latest["id"] == "show"
    assert latest["episode_id"] == "e1"
    assert latest["user_name"] == "bob"
    assert latest["season_number"] == 1
    assert latest["episode_number"] == 1
    assert latest["primary_image_hash"] == "hash-show"
    assert latest["last_played"] == NOW - (T0 - 100)


def test_last_library_activity_movies_collapse_by_title(repo) -> None:
    rows = repo.get_last_library_activity("movies", now=NOW)

    assert [r["id"] for r in rows] == ["m1", "m2"]
    assert rows[0]["activity_at"] == T0
    assert rows[0]["episode_name"] is None
    assert rows[0]["season_number"] is None
    assert rows[0]["episode_number"] is None


def test_last_library_activity_limit_and_order() -> None:
    repo = Repository(database_url="sqlite:///:memory:")
    repo.upsert_libraries([{"jellyfin_id": "movies", "name": "Movies"}])
    lib_id = repo.list_libraries()[0]["id"]
    repo.upsert_items([
        {"jellyfin_id": f"m{n}", "library_id": lib_id, "name": f"Movie {n:02d}", "type": "Movie"}
        for n in range(20)
    ])
    repo.insert_playback_activity([
        activity(f"a{n}", f"m{n}", T0 + n) for n in range(20)
    ])

    rows = repo.get_last_library_activity("movies", now=NOW)
    assert len(rows) == 15
    assert rows[0]["id"] == "m19"
    assert rows[-1]["id"] == "m5"
    assert repo.get_last_library_activity("unknown", now=NOW) == []


def test_views_by_hour_zero_fills(repo) -> None:
    data = repo.run_stats("views_by_hour", days=30, now=NOW)

    assert data["libraries"] == [
        {"id": "movies", "name": "Movies"},
        {"id": "tv", "name": "Shows"},
    ]
    assert len(data["stats"]) == 24
    by_hour = {s["key"]: s for s in data["stats"]}
    assert by_hour[12] == {"key": 12, "movies": 1, "tv": 0}
    assert by_hour[11] == {"key": 11, "movies": 1, "tv": 3}
    assert by_hour[0] == {"key": 0, "movies": 0, "tv": 0}


def test_views_by_hour_uses_timezone(repo) -> None:
    data = repo.run_stats(
        "views_by_hour", days=30, now=NOW, tz=timezone(timedelta(hours=2))
    )
    by_hour = {s["key"]: s for s in data["stats"]}
    assert by_hour[14]["movies"] == 1


def test_views_by_day_of_week(repo) -> None:
    data = repo.run_stats("views_by_day_of_week", days=30, now=NOW)

    assert [s["key"] for s in data["stats"]][0] == "Sunday"
    by_day = {s["key"]: s for s in data["stats"]}
    assert by_day["Monday"] == {"key": "Monday", "movies": 2, "tv": 3}
    assert by_day["Sunday"]["tv"] == 0


def test_views_over_time(repo) -> None:
    data = repo.run_stats("views_over_time", days=3, now=NOW)

    assert [s["key"] for s in data["stats"]] == [
        "2023-04-29", "2023-04-30", "2023-05-01",
    ]
    assert data["stats"][-1]["tv"] == 3


def test_rankings(repo) -> None:
    libraries = repo.run_stats("most_viewed_libraries", days=30, now=NOW)
    assert [(l["id"], l["plays"]) for l in libraries] == [("tv", 3), ("movies", 2)]
    assert libraries[0]["total_playback_seconds"] == 300

    users = repo.run_stats("most_active_users", days=30, now=NOW)
    assert [(u["user_id"], u["plays"]) for u in users] == [("u1", 4), ("u2", 1)]

    clients = repo.run_stats("most_used_clients", days=30, now=NOW)
    assert clients[0] == {"client": "Jellyfin Web", "plays": 4}

    methods = {m["play_method"]: m["plays"] for m in repo.run_stats("playback_methods", days=30, now=NOW)}
    assert methods == {"DirectPlay": 4, "Transcode": 1}

    movies = repo.run_stats("most_viewed_items", days=30, item_type="Movie", now=NOW)
    assert [(m["id"], m["plays"]) for m in movies] == [("m1", 2)]

    series = repo.run_stats("most_viewed_items", days=30, item_type="series", now=NOW)
    assert series[0]["id"] == "show"

    # A wider window picks up the old play
    movies = repo.run_stats("most_viewed_items", days=60, item_type="Movie", now=NOW)
    assert [m["id"] for m in movies] == ["m1", "m2"]


def test_global_user_and_item_stats(repo) -> None:
    assert repo.run_stats("global_user_stats", user_id="u1", hours=24, now=NOW) == {
        "plays": 4,
        "total_playback_seconds": 400,
    }
    assert repo.run_stats("global_user_stats", user_id="u1", hours=1, now=NOW)["plays"] == 1
    assert repo.run_stats("global_item_stats", item_id="show", hours=24, now=NOW)["plays"] == 3
    assert repo.run_stats("global_item_stats", item_id="e1", hours=24, now=NOW)["plays"] == 2


def test_user_last_played(repo) -> None:
    rows = repo.run_stats("user_last_played", user_id="u1", limit=2, now=NOW)
    assert [r["external_id"] for r in rows] == ["a4", "a5"]
    assert rows[0]["last_played"] == 3600


def test_library_overview_uses_cached_totals(repo) -> None:
    overview = {l["jellyfin_id"]: l for l in repo.run_stats("library_overview")}

    assert overview["tv"]["item_count"] == 1
    assert overview["tv"]["season_count"] == 1
    assert overview["tv"]["episode_count"] == 2
    assert overview["tv"]["total_plays"] == 3
    assert overview["movies"]["total_plays"] == 3
    assert overview["movies"]["last_played_item_name"] == "Heat"


def test_views_over_time_window_starts_at_first_day(repo) -> None:
    # 2023-04-28T20:00Z is inside the last 3 * 24h but before the first bucket
    repo.insert_playback_activity([
        activity("early", "m2", 1682712000),
        activity("midnight", "m2", 1682726400 + 60),
    ])
    data = repo.run_stats("views_over_time", days=3, now=NOW)

    by_day = {s["key"]: s for s in data["stats"]}
    assert "2023-04-28" not in by_day
    assert by_day["2023-04-29"]["movies"] == 1


def test_views_over_time_buckets_in_timezone(repo) -> None:
    # 2023-04-29T23:30 in UTC+2 is still April 29th locally
    repo.insert_playback_activity([activity("late", "m2", 1682803800)])
    data = repo.run_stats(
        "views_over_time", days=3, now=NOW, tz=timezone(timedelta(hours=2))
    )
    by_day = {s["key"]: s for s in data["stats"]}
    assert by_day["2023-04-29"]["movies"] == 1
    assert by_day["2023-04-30"]["movies"] == 0
