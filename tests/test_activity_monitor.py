import pytest

from services.activity_monitor import ActivityMonitor
from services.repository import Repository


class FakeSessionsClient:
    def __init__(self):
        self.sessions = []

    def get_sessions(self):
        return list(self.sessions)


def session(session_id="s1", item_id="m1", paused=False, **item):
    now_playing = {"Id": item_id, "Type": "Movie", "Name": "Heat"}
    now_playing.update(item)
    return {
        "Id": session_id,
        "UserId": "u1",
        "UserName": "alice",
        "Client": "Jellyfin Web",
        "DeviceName": "Firefox",
        "PlayState": {"IsPaused": paused, "PlayMethod": "DirectPlay"},
        "NowPlayingItem": now_playing,
    }


@pytest.fixture()
def client() -> FakeSessionsClient:
    return FakeSessionsClient()


@pytest.fixture()
def repo() -> Repository:
    return Repository(database_url="sqlite:///:memory:")


@pytest.fixture()
def monitor(client, repo) -> ActivityMonitor:
    return ActivityMonitor(client, repo, min_play_seconds=30)


def test_watch_is_written_when_it_ends(monitor, client, repo) -> None:
    client.sessions = [session()]
    assert monitor.poll(now=1000) == 0
    assert monitor.poll(now=1060) == 0
    assert len(monitor.active_watches) == 1

    client.sessions = []
    assert monitor.poll(now=1120) == 1
    assert monitor.active_watches == []

    row = repo.run_stats("user_last_played", user_id="u1", now=1200)[0]
    assert row["external_id"] == "s1:m1:1000"
    assert row["activity_at"] == 1000
    assert row["play_duration"] == 60
    assert row["client"] == "Jellyfin Web"


def test_paused_time_is_not_counted(monitor, client, repo) -> None:
    client.sessions = [session()]
    monitor.poll(now=0)
    client.sessions = [session(paused=True)]
    monitor.poll(now=40)
    monitor.poll(now=400)
    client.sessions = [session()]
    monitor.poll(now=500)
    monitor.poll(now=520)
    client.sessions = []
    monitor.poll(now=600)

    row = repo.run_stats("user_last_played", user_id="u1", now=600)[0]
    assert row["play_duration"] == 60


def test_short_watches_are_dropped(monitor, client, repo) -> None:
    client.sessions = [session()]
    monitor.poll(now=0)
    monitor.poll(now=10)
    client.sessions = []

    assert monitor.poll(now=20) == 0
    assert repo.count_playback_activity() == 0


def test_item_change_in_session_starts_new_watch(monitor, client, repo) -> None:
    client.sessions = [session(item_id="e1", Type="Episode", SeriesId="show",
                               SeriesName="The Show", SeasonId="se1", Name="Pilot")]
    monitor.poll(now=0)
    monitor.poll(now=100)

    client.sessions = [session(item_id="e2", Type="Episode", SeriesId="show",
                               SeriesName="The Show", SeasonId="se1", Name="Second")]
    assert monitor.poll(now=110) == 1

    rows = repo.run_stats("user_last_played", user_id="u1", now=200)
    assert len(rows) == 1
    assert rows[0]["now_playing_item_id"] == "show"
    assert rows[0]["episode_id"] == "e1"
    assert rows[0]["now_playing_item_name"] == "The Show : Pilot"
    assert [w.session["NowPlayingItem"]["Id"] for w in monitor.active_watches] == ["e2"]


def test_concurrent_sessions_tracked_separately(monitor, client, repo) -> None:
    client.sessions = [session("s1", "m1"), session("s2", "m1")]
    monitor.poll(now=0)
    monitor.poll(now=60)
    client.sessions = [session("s2", "m1")]
    monitor.poll(now=90)
    client.sessions = []
    monitor.poll(now=120)

    durations = sorted(
        r["play_duration"] for r in repo.run_stats("user_last_played", user_id="u1", now=200)
    )
    assert durations == [60, 90]
