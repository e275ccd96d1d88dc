"""Persisted sync watermark (``lastSyncTimestamp``)."""

import logging

from collabtable.replica import SENT_SEQ_KEY, Replica

logger = logging.getLogger("collabtable.watermark")

LAST_SYNC_KEY = "last_sync_timestamp"


class WatermarkStore:
    """Boundary below which this client is known to hold all server state.

    Zero means the replica has never completed a sync and the next one is a
    full hydration.
    """

    def __init__(self, replica: Replica):
        self._replica = replica

    async def get(self) -> int:
        raw = await self._replica.get_setting(LAST_SYNC_KEY)
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            logger.warning(f"Ignoring corrupt watermark {raw!r}; next sync is a full hydration")
            return 0

    async def advance(self, server_timestamp: int, sent_seq: int | None = None) -> None:
        """Record a committed cycle.

        ``sent_seq`` is the local change sequence number the cycle uploaded;
        local edits numbered above it are collected again next time.
        """
        await self._replica.set_setting(LAST_SYNC_KEY, str(int(server_timestamp)))
        if sent_seq is not None:
            await self._replica.set_setting(SENT_SEQ_KEY, str(int(sent_seq)))

    async def reset(self) -> None:
        await self._replica.delete_setting(LAST_SYNC_KEY)
