"""Paced, gated dispatch of signed transactions.

The pacing loop is the only code that reads or writes account nonces. Each request
then runs as its own task: reserve a gate slot, submit, resolve the slot with the
outcome. A slow request therefore holds a slot but never holds up pacing.
"""
import asyncio
import logging
import random
from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
from typing import Protocol

from near_workload.account import Account
from near_workload.constants import SelectionPolicy, TxExecutionStatus
from near_workload.errors import InsufficientAccounts, TransportError
from near_workload.gate import AdmissionGate
from near_workload.pacing import Pacer
from near_workload.rpc import TxResponse
from near_workload.transaction import (
    U64_MAX,
    U128_MAX,
    Action,
    FunctionCall,
    SignedTransaction,
    Transaction,
    Transfer,
    check_range,
)

log = logging.getLogger("near_workload.dispatcher")


class TxSubmitter(Protocol):
    async def send_tx(self, signed: SignedTransaction, wait_until: TxExecutionStatus) -> TxResponse: ...


@dataclass(frozen=True, slots=True)
class WorkDescriptor:
    sender: Account
    receiver_id: str
    actions: tuple[Action, ...]


@dataclass(frozen=True, slots=True)
class WorkItem:
    index: int
    sender: str
    receiver: str
    nonce: int
    actions: tuple[Action, ...]
    tx_hash: str | None = None


@dataclass(frozen=True, slots=True)
class Outcome:
    item: WorkItem
    response: TxResponse | None = None
    error: TransportError | None = None

    def __post_init__(self):
        if (self.response is None) == (self.error is None):
            raise ValueError("an outcome carries exactly one of response or error")


class Dispatcher:
    def __init__(
        self,
        client: TxSubmitter,
        gate: AdmissionGate,
        pacer: Pacer,
        block_hash: Callable[[], str],
        *,
        wait_until: TxExecutionStatus,
        stop: asyncio.Event | None = None,
        request_timeout: float | None = None,
    ):
        self.client = client
        self.gate = gate
        self.pacer = pacer
        self.block_hash = block_hash
        self.wait_until = wait_until
        self.stop = stop or asyncio.Event()
        self.request_timeout = request_timeout or None
        self.issued: list[WorkItem] = []
        self.skipped = 0
        self._units: set[asyncio.Task] = set()

    @property
    def outstanding(self) -> int:
        return len(self._units)

    async def dispatch(self, plan: Iterable[WorkDescriptor]) -> int:
        """Issue every planned item, one per pacer tick. Returns how many were launched."""
        for i, work in enumerate(plan):
            await self.pacer.tick()
            if self.stop.is_set():
                log.warning("Stop requested, no further items dispatched (%s issued)", len(self.issued))
                break

            sender = work.sender
            nonce = sender.next_nonce()
            tx = Transaction(
                signer_id=sender.id,
                public_key=sender.public_key,
                nonce=nonce,
                receiver_id=work.receiver_id,
                block_hash=self.block_hash(),
                actions=work.actions,
            )
            try:
                signed = tx.sign(sender.key)
            except ValueError as e:
                log.error("Skipping item %s from %s: cannot sign: %s", i, sender.id, e)
                self.skipped += 1
                continue
            sender.commit_nonce(nonce)

            item = WorkItem(
                index=i,
                sender=sender.id,
                receiver=work.receiver_id,
                nonce=nonce,
                actions=work.actions,
                tx_hash=signed.tx_hash,
            )
            self.issued.append(item)
            task = asyncio.create_task(self._submit(item, signed), name=f"submit-{i}")
            self._units.add(task)
            task.add_done_callback(self._unit_done)

        return len(self.issued)

    async def _submit(self, item: WorkItem, signed: SignedTransaction) -> None:
        permit = await self.gate.acquire()
        try:
            try:
                if self.request_timeout:
                    response = await asyncio.wait_for(
                        self.client.send_tx(signed, self.wait_until), timeout=self.request_timeout
                    )
                else:
                    response = await self.client.send_tx(signed, self.wait_until)
                outcome = Outcome(item=item, response=response)
            except TimeoutError:
                err = TransportError(f"no response within {self.request_timeout}s", method="send_tx")
                outcome = Outcome(item=item, error=err)
            except TransportError as e:
                outcome = Outcome(item=item, error=e)
            except Exception as e:
                # anything else still has to reach the collector as a fatal outcome
                err = TransportError(f"send_tx failed: {e.__class__.__name__}: {e}", method="send_tx")
                outcome = Outcome(item=item, error=err)
            permit.resolve(outcome)
        finally:
            permit.abandon()

    def _unit_done(self, task: asyncio.Task) -> None:
        self._units.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("%s failed without an outcome: %s: %s", task.get_name(), type(exc).__name__, exc)

    async def drain(self) -> None:
        """Wait for every launched request to finish."""
        while self._units:
            await asyncio.gather(*list(self._units), return_exceptions=True)

    def cancel_outstanding(self) -> int:
        units = list(self._units)
        for t in units:
            t.cancel()
        if units:
            log.warning("Abandoned %s in-flight requests", len(units))
        return len(units)


def pick_receiver(sender_idx: int, candidate_idx: int, n: int) -> int:
    """Re-target a self-transfer to the next account, wrapping around."""
    if candidate_idx == sender_idx:
        return (sender_idx + 1) % n
    return candidate_idx


def transfer_plan(
    accounts: Sequence[Account],
    num_transfers: int,
    amount: int,
    *,
    policy: SelectionPolicy = SelectionPolicy.ROUND_ROBIN,
    rng: random.Random | None = None,
) -> Iterator[WorkDescriptor]:
    n = len(accounts)
    if n < 2:
        raise InsufficientAccounts(f"transfers need at least 2 accounts, found {n}")
    check_range("amount", amount, U128_MAX)
    rng = rng or random.Random()

    def _plan():
        for i in range(num_transfers):
            if policy == SelectionPolicy.ROUND_ROBIN:
                s, r = i % n, (i + 1) % n
            else:
                s, r = rng.randrange(n), rng.randrange(n)
            r = pick_receiver(s, r, n)
            yield WorkDescriptor(accounts[s], accounts[r].id, (Transfer(deposit=amount),))

    return _plan()


def function_call_plan(
    accounts: Sequence[Account],
    receiver_id: str,
    method_name: str,
    args: bytes,
    *,
    gas: int,
    deposit: int,
    num_calls: int,
) -> Iterator[WorkDescriptor]:
    if not accounts:
        raise InsufficientAccounts("function calls need at least 1 account")
    check_range("gas", gas, U64_MAX)
    check_range("deposit", deposit, U128_MAX)
    action = FunctionCall(method_name=method_name, args=args, gas=gas, deposit=deposit)
    return (WorkDescriptor(accounts[i % len(accounts)], receiver_id, (action,)) for i in range(num_calls))
