from clipsync.config import DeviceConfig
from clipsync.main import ClipSyncApp, main
from clipsync.models.clip import ClipChange


def test_local_mode_without_api_base(tmp_path):
    app = ClipSyncApp(config_dir=tmp_path)
    assert app.mode == "local"
    assert app.sink is app.store
    assert app.sync_worker is None

    record = app.sink.create(ClipChange(content="hello"))
    assert app.set_favorite(record.id, True).isFavorite
    assert app.delete(record.id).isDeleted
    assert app.sink.list()["items"] == []


def test_remote_mode_routes_writes_through_the_outbox(tmp_path):
    DeviceConfig(apiBase="http://localhost:8787", userId="u1").save(tmp_path)
    app = ClipSyncApp(config_dir=tmp_path)
    try:
        assert app.mode == "remote"
        app.sink.create(ClipChange(content="queued"))
        assert app.sync_client.pending == 1
    finally:
        app.sync_client.close()


def test_config_command_updates_settings(tmp_path, capsys):
    assert main(["-c", str(tmp_path), "config", "--retention", "30d", "--session-token", "secret"]) == 0

    config = DeviceConfig.load(tmp_path)
    assert config.retention == "30d"
    assert config.sessionToken == "secret"
    out = capsys.readouterr().out
    assert "sessionToken: <set>" in out
    assert "secret" not in out


def test_list_command(tmp_path, capsys):
    ClipSyncApp(config_dir=tmp_path).store.create(ClipChange(content="listed clip"))
    assert main(["-c", str(tmp_path), "list"]) == 0
    assert "listed clip" in capsys.readouterr().out
