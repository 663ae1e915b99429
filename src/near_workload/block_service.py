import asyncio
import contextlib
import logging

import near_workload.constants as C
from near_workload.errors import TransportError
from near_workload.rpc import RpcClient

log = logging.getLogger("near_workload.block_service")


class BlockService:
    """Keeps a recent final block hash for transactions to reference.

    Transactions built against a hash older than the network's validity window
    are rejected, so long runs need the hash refreshed in the background.
    """

    def __init__(self, client: RpcClient, refresh_interval: float = C.BLOCK_REFRESH_INTERVAL):
        self.client = client
        self.refresh_interval = refresh_interval
        self.block_hash: str | None = None
        self.block_height: int | None = None
        self._stop = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def refresh(self) -> str:
        block = await self.client.block("final")
        self.block_hash = block.hash
        self.block_height = block.height
        log.debug("Block hash now %s (height %s)", block.hash, block.height)
        return block.hash

    async def start(self) -> None:
        """Fetch the first hash (errors propagate) and start refreshing in the background."""
        await self.refresh()
        if self.refresh_interval > 0 and self._task is None:
            self._stop.clear()
            self._task = asyncio.create_task(self._refresh_loop(), name="block_service")

    async def _refresh_loop(self) -> None:
        while not self._stop.is_set():
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop.wait(), timeout=self.refresh_interval)
            if self._stop.is_set():
                break
            try:
                await self.refresh()
            except TransportError as e:
                log.warning("Block hash refresh failed, keeping %s: %s", self.block_hash, e)

    async def stop(self) -> None:
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    def get_block_hash(self) -> str:
        if self.block_hash is None:
            raise RuntimeError("BlockService.start() has not fetched a block yet")
        return self.block_hash
