"""Admission gate bounding outstanding requests, and the channel their outcomes flow through."""
import asyncio
import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from near_workload.dispatcher import Outcome

log = logging.getLogger("near_workload.gate")

_CLOSED = object()


class OutcomeChannel:
    """Many producers, one consumer. `receive()` returns None once closed and drained."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, outcome: "Outcome") -> None:
        if self._closed:
            raise RuntimeError("send on closed outcome channel")
        self._queue.put_nowait(outcome)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    async def receive(self) -> "Outcome | None":
        item = await self._queue.get()
        if item is _CLOSED:
            # leave the marker for any later receive
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def qsize(self) -> int:
        return self._queue.qsize()


class Permit:
    """One reserved gate slot. Resolve it with exactly one outcome, or abandon it."""

    __slots__ = ("_gate", "_done")

    def __init__(self, gate: "AdmissionGate"):
        self._gate = gate
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def resolve(self, outcome: "Outcome") -> None:
        if self._done:
            raise RuntimeError("permit already resolved")
        self._done = True
        try:
            self._gate.channel.send(outcome)
        finally:
            self._gate._release()

    def abandon(self) -> None:
        """Give the slot back without an outcome (the unit was cancelled)."""
        if self._done:
            return
        self._done = True
        self._gate._release()


class AdmissionGate:
    """Counting semaphore over outstanding requests; independent of the pacer."""

    def __init__(self, capacity: int, channel: OutcomeChannel):
        if capacity < 1:
            raise ValueError(f"gate capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self.channel = channel
        self._sem = asyncio.Semaphore(capacity)
        self.in_flight = 0
        self.max_in_flight = 0

    async def acquire(self) -> Permit:
        await self._sem.acquire()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        return Permit(self)

    def _release(self) -> None:
        self.in_flight -= 1
        self._sem.release()
