import pytest

from services.settings_store import SettingsService, MASKED_API_KEY


@pytest.fixture()
def svc() -> SettingsService:
    return SettingsService(
        database_url="sqlite:///:memory:",
        encryption_key_path=":memory:"
    )


def test_defaults_on_first_read(svc) -> None:
    data = svc.get()
    assert data["jf_host"] is None
    assert data["jf_api_key"] is None
    assert data["sync_interval"] == 1800
    assert data["monitor_interval"] == 5
    assert svc.is_configured() is False


def test_api_key_is_encrypted_at_rest(svc) -> None:
    svc.update({"jf_host": "http://jf.local:8096", "jf_api_key": "secret"})

    from services.settings_store import Settings
    with svc._session() as session:
        row = session.query(Settings).first()
        assert row.jf_api_key_encrypted
        assert "secret" not in row.jf_api_key_encrypted

    assert svc.get()["jf_api_key"] == "secret"
    assert svc.is_configured() is True


def test_masked_key_does_not_overwrite(svc) -> None:
    svc.update({"jf_api_key": "secret"})
    assert svc.get_masked()["jf_api_key"] == MASKED_API_KEY

    svc.update({"jf_api_key": MASKED_API_KEY})
    assert svc.get()["jf_api_key"] == "secret"


def test_empty_key_clears(svc) -> None:
    svc.update({"jf_api_key": "secret"})
    svc.update({"jf_api_key": ""})
    assert svc.get()["jf_api_key"] is None
    assert svc.get_masked()["jf_api_key"] is None


def test_intervals_must_be_positive(svc) -> None:
    svc.update({"sync_interval": "600", "monitor_interval": 0})
    data = svc.get()
    assert data["sync_interval"] == 600
    assert data["monitor_interval"] == 5

    svc.update({"sync_interval": "soon"})
    assert svc.get()["sync_interval"] == 600


def test_unknown_keys_ignored(svc) -> None:
    data = svc.update({"language": "fr", "preferred_admin_id": " admin-1 "})
    assert "language" not in data
    assert svc.get_preferred_admin() == "admin-1"


def test_playback_import_rowid_roundtrip(svc) -> None:
    assert svc.get_last_playback_import_rowid() is None

    svc.set_last_playback_import_rowid(1234)
    assert svc.get_last_playback_import_rowid() == 1234


def test_key_file_persists_across_instances(tmp_path) -> None:
    key_path = tmp_path / "secret.key"
    db_url = f"sqlite:///{tmp_path / 'settings.db'}"

    first = SettingsService(database_url=db_url, encryption_key_path=str(key_path))
    first.update({"jf_api_key": "secret"})
    first.engine.dispose()
    assert key_path.exists()

    second = SettingsService(database_url=db_url, encryption_key_path=str(key_path))
    assert second.get()["jf_api_key"] == "secret"
