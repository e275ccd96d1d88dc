"""Client session: one replica, its server settings and the sync machinery around them."""

import asyncio
import logging

from collabtable.config import Config
from collabtable.poller import NotificationPoller
from collabtable.replica import Replica
from collabtable.service import SyncService
from collabtable.transport import FallbackSyncTransport, HttpSyncTransport, WebSocketSyncTransport
from collabtable.watermark import LAST_SYNC_KEY, WatermarkStore

logger = logging.getLogger("collabtable.session")

SERVER_URL_KEY = "server_url"
SERVER_PASSWORD_KEY = "server_password"


class ClientSession:
    """Owns everything a client needs to talk to one server.

    ``sync`` and ``poller`` stay None until a server has been configured.
    """

    def __init__(self, replica: Replica, config: Config, device_id: str):
        self.replica = replica
        self.config = config
        self.device_id = device_id
        self.watermark = WatermarkStore(replica)
        self.server_url: str | None = None
        self.http: HttpSyncTransport | None = None
        self.sync: SyncService | None = None
        self.poller: NotificationPoller | None = None
        self._tasks: list[asyncio.Task] = []

    @classmethod
    async def open(cls, config: Config) -> "ClientSession":
        replica = await Replica.open(config.replica_path)
        device_id = config.device_id or await replica.get_device_id()
        session = cls(replica, config, device_id)
        url = await replica.get_setting(SERVER_URL_KEY)
        if url:
            password = await replica.get_setting(SERVER_PASSWORD_KEY)
            session._connect(url, password)
        return session

    @property
    def configured(self) -> bool:
        return self.sync is not None

    def _connect(self, url: str, password: str | None):
        self.server_url = url
        self.http = HttpSyncTransport(
            url, password=password, device_id=self.device_id, timeout=self.config.request_timeout
        )
        if self.config.use_websocket:
            ws = WebSocketSyncTransport(
                url, password=password, device_id=self.device_id, timeout=self.config.ws_timeout
            )
            transport = FallbackSyncTransport(ws, self.http)
        else:
            transport = self.http
        self.sync = SyncService(self.replica, self.watermark, transport, interval=self.config.sync_interval)
        self.poller = NotificationPoller(
            self.replica, self.http, interval=self.config.notification_poll_interval
        )
        self.replica.add_change_listener(self.sync.request_sync)

    async def _disconnect(self):
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        if self.poller is not None:
            self.poller.stop()
        if self.sync is not None:
            self.replica.remove_change_listener(self.sync.request_sync)
            await self.sync.stop()
            await self.sync.transport.close()
        self.server_url = None
        self.http = None
        self.sync = None
        self.poller = None

    async def configure_server(self, url: str, password: str):
        """Store a validated server and force a full hydration on the next sync."""
        await self._disconnect()
        await self.replica.set_setting(SERVER_URL_KEY, url)
        await self.replica.set_setting(SERVER_PASSWORD_KEY, password)
        await self.watermark.reset()
        self._connect(url, password)
        logger.info(f"Server set to {url}")

    def start(self):
        """Start the periodic sync loop and the notification poller."""
        if not self.configured:
            raise RuntimeError("No server configured")
        self._tasks = [
            asyncio.create_task(self.sync.run()),
            asyncio.create_task(self.poller.run()),
        ]

    async def wait(self):
        """Block until the loops started by start() finish."""
        await asyncio.gather(*self._tasks)

    async def leave_server(self):
        await self._disconnect()
        await self.replica.delete_setting(SERVER_URL_KEY, SERVER_PASSWORD_KEY, LAST_SYNC_KEY)
        logger.info("Left server; local data kept")

    async def close(self):
        await self._disconnect()
        await self.replica.close()
