import asyncio
import logging

log = logging.getLogger("near_workload.pacing")


class Pacer:
    """Issues one tick per `interval` seconds; the only thing controlling submission rate.

    The first tick fires immediately. A consumer that falls behind gets a single
    tick right away and the schedule restarts from then, so missed ticks never
    turn into a burst.
    """

    def __init__(self, interval: float):
        if interval <= 0:
            raise ValueError(f"pacing interval must be positive, got {interval}")
        self.interval = interval
        self.ticks = 0
        self.missed = 0
        self._deadline: float | None = None

    @classmethod
    def from_micros(cls, micros: int) -> "Pacer":
        return cls(micros / 1_000_000)

    async def tick(self) -> float:
        loop = asyncio.get_running_loop()
        now = loop.time()
        if self._deadline is None:
            self._deadline = now
        if self._deadline > now:
            await asyncio.sleep(self._deadline - now)
            fired = self._deadline
        else:
            fired = now
            if now - self._deadline >= self.interval:
                self.missed += 1
                log.debug("Pacer behind by %.6fs, collapsing missed ticks", now - self._deadline)
        self._deadline = fired + self.interval
        self.ticks += 1
        return fired
