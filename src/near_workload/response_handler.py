"""Single consumer of request outcomes and the barrier a run waits on.

Outcomes arrive in completion order, not submission order.
"""
import asyncio
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass

import near_workload.constants as C
from near_workload.constants import ResponseCheckSeverity, TxExecutionStatus
from near_workload.dispatcher import Outcome, WorkItem
from near_workload.errors import ResponseCheckError
from near_workload.gate import OutcomeChannel
from near_workload.rpc import check_tx_response, warn_or_raise

log = logging.getLogger("near_workload.response_handler")


@dataclass(frozen=True, slots=True)
class RunReport:
    expected: int
    observed: int
    elapsed: float
    violations: int

    @property
    def shortfall(self) -> int:
        return self.expected - self.observed

    @property
    def tps(self) -> float:
        return self.observed / self.elapsed if self.elapsed > 0 else 0.0

    def as_dict(self) -> dict:
        return {
            "expected": self.expected,
            "observed": self.observed,
            "shortfall": self.shortfall,
            "elapsed_seconds": round(self.elapsed, 3),
            "tps": round(self.tps, 2),
            "violations": self.violations,
        }


class CompletionBarrier:
    """Expected/observed accounting for one run.

    The clock starts at the first observed outcome, so throughput reflects
    round trips rather than local submission time.
    """

    def __init__(self, expected: int):
        self.expected = expected
        self.observed = 0
        self.violations = 0
        self.confirmed: set[int] = set()
        self.first_at: float | None = None
        self.last_at: float | None = None
        self._finished = asyncio.Event()

    def observe(self, outcome: Outcome) -> None:
        now = time.perf_counter()
        if self.first_at is None:
            self.first_at = now
        self.last_at = now
        self.observed += 1
        if outcome.response is not None and outcome.response.has_outcome:
            self.confirmed.add(outcome.item.index)

    @property
    def complete(self) -> bool:
        return self.observed >= self.expected

    @property
    def elapsed(self) -> float:
        if self.first_at is None:
            return 0.0
        return self.last_at - self.first_at

    def finish(self) -> None:
        self._finished.set()

    @property
    def finished(self) -> bool:
        return self._finished.is_set()

    async def wait(self) -> "RunReport":
        await self._finished.wait()
        return self.report()

    def provisional_senders(self, issued: Iterable[WorkItem]) -> set[str]:
        """Senders with at least one item whose execution was never confirmed.

        Their committed nonces are a guess and should be re-queried before reuse.
        """
        return {item.sender for item in issued if item.index not in self.confirmed}

    def report(self) -> RunReport:
        return RunReport(
            expected=self.expected,
            observed=self.observed,
            elapsed=self.elapsed,
            violations=self.violations,
        )


class RpcResponseHandler:
    def __init__(
        self,
        receiver: OutcomeChannel,
        wait_until: TxExecutionStatus,
        severity: ResponseCheckSeverity,
        barrier: CompletionBarrier,
        *,
        stop: asyncio.Event | None = None,
    ):
        self.receiver = receiver
        self.wait_until = wait_until
        self.severity = severity
        self.barrier = barrier
        self.stop = stop or asyncio.Event()

    async def handle_all_responses(self) -> RunReport:
        """Consume outcomes until the expected count is reached or the channel closes.

        A transport error always aborts. Check failures abort only under `assert`.
        """
        expected = self.barrier.expected
        try:
            while not self.barrier.complete:
                outcome = await self.receiver.receive()
                if outcome is None:
                    log.warning(
                        "Expected %s responses but channel closed after %s",
                        expected, self.barrier.observed,
                    )
                    break
                self.barrier.observe(outcome)
                self._handle(outcome)

                n = self.barrier.observed
                if n % C.PROGRESS_LOG_EVERY == 0:
                    log.info("Handled %s/%s responses", n, expected)
        except BaseException:
            self.stop.set()
            raise
        finally:
            self.barrier.finish()

        report = self.barrier.report()
        log.info(
            "Handled %s/%s responses in %.2f seconds (%.1f tps, %s violations)",
            report.observed, report.expected, report.elapsed, report.tps, report.violations,
        )
        return report

    def _handle(self, outcome: Outcome) -> None:
        item = outcome.item
        if outcome.error is not None:
            log.error("Request %s (%s nonce %s) failed: %s", item.index, item.sender, item.nonce, outcome.error)
            raise outcome.error

        problems = check_tx_response(outcome.response, self.wait_until)
        if problems:
            self.barrier.violations += 1
        context = f"tx {item.tx_hash or item.index} from {item.sender} nonce {item.nonce}"
        try:
            warn_or_raise(problems, self.severity, context=context)
        except ResponseCheckError:
            log.error("Aborting run on first failed check (severity=%s)", self.severity)
            raise
