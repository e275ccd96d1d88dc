from pathlib import Path

import yaml

from collabtable.config import DEFAULT_CONFIG, Config


def test_defaults(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("SERVER_PASSWORD", raising=False)
    monkeypatch.delenv("DB_PATH", raising=False)
    cfg = Config(tmp_path / "missing.yaml")

    assert cfg.server_port == 3000
    assert cfg.server_password is None
    assert cfg.reject_stale_writes is False
    assert cfg.sync_interval == 5
    assert cfg.request_timeout == 30
    assert cfg.ws_timeout == 30
    assert cfg.use_websocket is True
    assert cfg.retention_days == 7
    assert cfg.notification_poll_interval == 15


def test_yaml_overrides_are_merged(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("SERVER_PASSWORD", raising=False)
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"server": {"port": 8080, "password": "pw"}, "client": {"use_websocket": False}}))

    cfg = Config(path)
    assert cfg.server_port == 8080
    assert cfg.server_password == "pw"
    assert cfg.server_host == DEFAULT_CONFIG["server"]["host"]
    assert cfg.use_websocket is False
    assert cfg.sync_interval == 5


def test_environment_wins(tmp_path: Path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.dump({"server": {"password": "from-file"}}))
    monkeypatch.setenv("SERVER_PASSWORD", "from-env")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "env.db"))

    cfg = Config(path)
    assert cfg.server_password == "from-env"
    assert cfg.db_path == tmp_path / "env.db"


def test_broken_yaml_keeps_defaults(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("server: [unclosed")

    cfg = Config(path)
    assert cfg.server_port == 3000


def test_ensure_config_file(tmp_path: Path):
    path = tmp_path / "nested" / "config.yaml"
    cfg = Config(path)
    cfg.ensure_config_file()

    assert path.exists()
    assert yaml.safe_load(path.read_text())["server"]["port"] == 3000
