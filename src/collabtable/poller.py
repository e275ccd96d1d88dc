"""Client notification poller for change events made by other devices."""

import asyncio
import logging
from typing import Awaitable, Callable

from collabtable.errors import SyncError
from collabtable.models import NotificationEvent
from collabtable.replica import Replica
from collabtable.transport import HttpSyncTransport

logger = logging.getLogger("collabtable.poller")

CHECKPOINT_KEY = "last_notify_check_timestamp"
DEFAULT_POLL_INTERVAL = 15.0

Handler = Callable[[NotificationEvent, str | None], Awaitable[None] | None]


def describe(event: NotificationEvent, list_name: str | None) -> str:
    """One human readable line for an event."""
    name = f'"{list_name}"' if list_name else "a list"
    if event.entity_type == "list":
        return f"{name} was {event.event_type}"
    return f"{name} has new changes"


async def log_notification(event: NotificationEvent, list_name: str | None):
    logger.info(describe(event, list_name))


class NotificationPoller:
    """Polls ``/api/notifications/poll`` and hands each event to ``handler``.

    Keeps its own checkpoint in the replica settings. The sync watermark is
    never read or written here.
    """

    def __init__(
        self,
        replica: Replica,
        transport: HttpSyncTransport,
        interval: float = DEFAULT_POLL_INTERVAL,
        handler: Handler | None = None,
    ):
        self.replica = replica
        self.transport = transport
        self.interval = interval
        self.handler = handler or log_notification
        self._stop = asyncio.Event()

    async def checkpoint(self) -> int:
        raw = await self.replica.get_setting(CHECKPOINT_KEY)
        try:
            return int(raw) if raw is not None else 0
        except ValueError:
            return 0

    async def poll_once(self) -> list[NotificationEvent]:
        since = await self.checkpoint()
        response = await self.transport.poll_notifications(since)
        for event in response.notifications:
            list_name = None
            if event.list_id:
                lst = await self.replica.get_list(event.list_id)
                list_name = lst.name if lst else None
            result = self.handler(event, list_name)
            if asyncio.iscoroutine(result):
                await result
        await self.replica.set_setting(CHECKPOINT_KEY, str(response.server_timestamp))
        return response.notifications

    async def run(self):
        self._stop.clear()
        while not self._stop.is_set():
            try:
                await self.poll_once()
            except SyncError as e:
                logger.warning(f"Notification poll failed: {e}")
            except Exception:
                logger.exception("Notification poll error (will retry)")

            try:
                await asyncio.wait_for(self._stop.wait(), self.interval)
            except asyncio.TimeoutError:
                pass

    def stop(self):
        self._stop.set()
