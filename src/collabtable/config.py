import copy
import logging
import os
from pathlib import Path

import yaml

logger = logging.getLogger("collabtable.config")

DEFAULT_CONFIG = {
    "server": {
        "host": "0.0.0.0",
        "port": 3000,
        "password": None,
        "reject_stale_writes": False,
    },
    "database": {
        "path": str(Path.home() / ".local" / "share" / "collabtable" / "server.db"),
    },
    "client": {
        "replica_path": str(Path.home() / ".local" / "share" / "collabtable" / "replica.db"),
        "sync_interval": 5,
        "request_timeout": 30,
        "ws_timeout": 30,
        "use_websocket": True,
        "device_id": None,
    },
    "notifications": {
        "retention_days": 7,
        "poll_interval": 15,
    },
    "logging": {
        "level": "INFO",
    },
}

CONFIG_DIR = Path(os.environ.get("COLLABTABLE_CONFIG_DIR", Path.home() / ".config" / "collabtable"))
CONFIG_PATH = CONFIG_DIR / "config.yaml"


class Config:
    def __init__(self, path: Path | None = None):
        self._path = path or CONFIG_PATH
        self._config = copy.deepcopy(DEFAULT_CONFIG)
        self.load()

    def load(self):
        if self._path.exists():
            try:
                with open(self._path, "r") as f:
                    user_config = yaml.safe_load(f)
                    if user_config:
                        self._update_dict(self._config, user_config)
            except (OSError, yaml.YAMLError) as e:
                logger.error(f"Error loading config from {self._path}: {e}")

    def _update_dict(self, base_dict, update_with):
        for key, value in update_with.items():
            if isinstance(value, dict) and key in base_dict and isinstance(base_dict[key], dict):
                self._update_dict(base_dict[key], value)
            else:
                base_dict[key] = value

    @property
    def server_host(self) -> str:
        return self._config["server"]["host"]

    @property
    def server_port(self) -> int:
        return int(self._config["server"]["port"])

    @property
    def server_password(self) -> str | None:
        """Shared secret for the API. Empty means authentication is disabled."""
        password = os.environ.get("SERVER_PASSWORD") or self._config["server"]["password"]
        return password or None

    @property
    def reject_stale_writes(self) -> bool:
        return bool(self._config["server"]["reject_stale_writes"])

    @property
    def db_path(self) -> Path:
        raw = os.environ.get("DB_PATH") or self._config["database"]["path"]
        return Path(os.path.expanduser(raw))

    @property
    def replica_path(self) -> Path:
        return Path(os.path.expanduser(self._config["client"]["replica_path"]))

    @property
    def sync_interval(self) -> float:
        return float(self._config["client"]["sync_interval"])

    @property
    def request_timeout(self) -> float:
        return float(self._config["client"]["request_timeout"])

    @property
    def ws_timeout(self) -> float:
        return float(self._config["client"]["ws_timeout"])

    @property
    def use_websocket(self) -> bool:
        return bool(self._config["client"]["use_websocket"])

    @property
    def device_id(self) -> str | None:
        return self._config["client"]["device_id"]

    @property
    def retention_days(self) -> int:
        return int(self._config["notifications"]["retention_days"])

    @property
    def notification_poll_interval(self) -> float:
        return float(self._config["notifications"]["poll_interval"])

    @property
    def log_level(self) -> str:
        return self._config["logging"]["level"]

    def ensure_config_file(self):
        """Create a default config file if it doesn't exist."""
        if not self._path.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w") as f:
                yaml.dump(DEFAULT_CONFIG, f, default_flow_style=False)
            logger.info(f"Created default config at {self._path}")


config = Config()
