"""Client sync orchestration: collect, send, apply, advance the watermark."""

import asyncio
import logging
from dataclasses import dataclass

from collabtable.errors import AuthenticationError, SyncError
from collabtable.replica import Replica
from collabtable.transport import SyncTransport
from collabtable.watermark import WatermarkStore

logger = logging.getLogger("collabtable.service")

DEFAULT_SYNC_INTERVAL = 5.0


@dataclass
class SyncResult:
    sent: int
    received: int
    dropped: int
    server_timestamp: int
    initial: bool


class SyncService:
    """Runs sync cycles against one server for one replica.

    At most one cycle is in flight; concurrent callers share its result.
    """

    def __init__(
        self,
        replica: Replica,
        watermark: WatermarkStore,
        transport: SyncTransport,
        interval: float = DEFAULT_SYNC_INTERVAL,
    ):
        self.replica = replica
        self.watermark = watermark
        self.transport = transport
        self.interval = interval
        self.last_result: SyncResult | None = None
        self.last_error: Exception | None = None
        self._inflight: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._stop = asyncio.Event()

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    async def sync_once(self) -> SyncResult:
        if not self.in_flight:
            self._inflight = asyncio.create_task(self._perform_sync())
        # A cancelled caller must not cancel the cycle other callers are waiting on.
        return await asyncio.shield(self._inflight)

    async def _perform_sync(self) -> SyncResult:
        since = await self.watermark.get()
        initial = since == 0
        if initial:
            logger.info("Starting initial sync")

        request, sent_seq = await self.replica.collect_pending(since)
        sent = request.counts()
        if any(sent):
            logger.info("Sending: %d lists, %d fields, %d items, %d values", *sent)

        try:
            response = await self.transport.sync(request)
            applied = await self.replica.apply_response(response, sent_seq)
        except Exception as e:
            self.last_error = e
            raise

        received = response.counts()
        if any(received):
            logger.info("Received: %d lists, %d fields, %d items, %d values", *received)

        await self.watermark.advance(response.server_timestamp, sent_seq)
        self.last_error = None
        self.last_result = SyncResult(
            sent=sum(sent),
            received=sum(received),
            dropped=applied.dropped,
            server_timestamp=response.server_timestamp,
            initial=initial,
        )
        return self.last_result

    def request_sync(self) -> None:
        """Schedule a sync after a local edit. Failures are logged, never raised."""
        task = asyncio.create_task(self._requested_sync(self.in_flight))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _requested_sync(self, behind_inflight: bool):
        try:
            if behind_inflight:
                # The running cycle may have collected before this edit landed.
                await self.sync_once()
            await self.sync_once()
        except AuthenticationError as e:
            logger.error(f"Sync rejected, check the server password: {e}")
        except SyncError as e:
            logger.warning(f"Background sync failed: {e}")
        except Exception:
            logger.exception("Background sync failed")

    async def refresh(self) -> SyncResult:
        """Manual refresh. Errors propagate to the caller."""
        return await self.sync_once()

    async def run(self, interval: float | None = None):
        """Sync immediately, then every ``interval`` seconds until stop()."""
        interval = interval or self.interval
        self._stop.clear()
        logger.info("Sync loop started, every %gs", interval)

        while not self._stop.is_set():
            try:
                await self.sync_once()
            except AuthenticationError as e:
                logger.error(f"Sync rejected, check the server password: {e}")
            except SyncError as e:
                logger.warning(f"Sync failed (will retry): {e}")
            except Exception:
                logger.exception("Sync error (will retry)")

            try:
                await asyncio.wait_for(self._stop.wait(), interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Sync loop stopped.")

    async def stop(self):
        self._stop.set()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
