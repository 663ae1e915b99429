import asyncio
import contextlib
import json
import logging
import random
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import near_workload.account as account_store
import near_workload.constants as C
from near_workload.account import Account
from near_workload.block_service import BlockService
from near_workload.constants import ResponseCheckSeverity, SelectionPolicy, TxExecutionStatus
from near_workload.dispatcher import (
    Dispatcher,
    WorkDescriptor,
    WorkItem,
    function_call_plan,
    transfer_plan,
)
from near_workload.errors import ConfigError, TransportError
from near_workload.gate import AdmissionGate, OutcomeChannel
from near_workload.pacing import Pacer
from near_workload.response_handler import CompletionBarrier, RpcResponseHandler, RunReport
from near_workload.rpc import RpcClient, TxResponse, check_tx_response, warn_or_raise
from near_workload.transaction import (
    U64_MAX,
    U128_MAX,
    Action,
    AddKey,
    CreateAccount,
    DeployContract,
    FunctionCall,
    Transaction,
    Transfer,
    check_range,
    new_create_subaccount_actions,
)

log = logging.getLogger("near_workload.workload")


@dataclass
class PipelineRun:
    report: RunReport
    issued: list[WorkItem] = field(default_factory=list)
    provisional: set[str] = field(default_factory=set)


def sub_account_id(i: int, signer_id: str, prefix: str | None = None) -> str:
    """`user_<i>.<signer>`, or `<prefix>_user_<i>.<signer>` so reruns don't collide with existing accounts."""
    subname = f"{prefix}_user_{i}" if prefix else f"user_{i}"
    return f"{subname}.{signer_id}"


def read_wasm_bytes(path: str | Path) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as e:
        raise ConfigError(f"cannot read wasm file {path}: {e}") from e


def parse_json_object(args: str) -> bytes:
    """Function call args must be a JSON object; returns the raw bytes sent on the wire."""
    try:
        obj = json.loads(args)
    except json.JSONDecodeError as e:
        raise ConfigError(f"function call args are not valid JSON: {e}") from e
    if not isinstance(obj, dict):
        raise ConfigError(f"function call args must be a JSON object, got {type(obj).__name__}")
    return args.encode("utf-8")


class Workload:
    def __init__(self, config: dict, client: RpcClient):
        self.config = config
        self.client = client
        self.stop = asyncio.Event()

        # current or most recent run, for status reporting
        self.barrier: CompletionBarrier | None = None
        self.last_report: RunReport | None = None

    def _bench(self, key: str, value: Any, default: Any) -> Any:
        if value is not None:
            return value
        return self.config.get("benchmark", {}).get(key, default)

    def request_stop(self) -> None:
        log.info("Stop requested")
        self.stop.set()

    @contextlib.asynccontextmanager
    async def _block_service(self):
        refresh = self.config.get("block_service", {}).get("refresh_interval", C.BLOCK_REFRESH_INTERVAL)
        bs = BlockService(self.client, refresh_interval=refresh)
        await bs.start()
        try:
            yield bs
        finally:
            await bs.stop()

    async def run_pipeline(
        self,
        plan: Iterable[WorkDescriptor],
        expected: int,
        *,
        block_hash: Callable[[], str],
        wait_until: TxExecutionStatus | None = None,
        severity: ResponseCheckSeverity | None = None,
        channel_buffer_size: int | None = None,
        interval_micros: int | None = None,
        request_timeout: float | None = None,
    ) -> PipelineRun:
        """Pace, gate and submit every planned transaction, then wait until all outcomes are handled.

        The first fatal outcome stops dispatch, abandons in-flight requests and is re-raised here.
        """
        wait_until = TxExecutionStatus(self._bench("wait_until", wait_until, C.DEFAULT_WAIT_UNTIL))
        severity = ResponseCheckSeverity(self._bench("severity", severity, ResponseCheckSeverity.LOG))
        capacity = self._bench("channel_buffer_size", channel_buffer_size, C.DEFAULT_CHANNEL_BUFFER_SIZE)
        micros = self._bench("interval_duration_micros", interval_micros, C.DEFAULT_INTERVAL_MICROS)
        request_timeout = self._bench("request_timeout", request_timeout, 0)

        channel = OutcomeChannel()
        gate = AdmissionGate(capacity, channel)
        barrier = CompletionBarrier(expected)
        self.barrier = barrier
        dispatcher = Dispatcher(
            self.client,
            gate,
            Pacer.from_micros(micros),
            block_hash,
            wait_until=wait_until,
            stop=self.stop,
            request_timeout=request_timeout,
        )
        handler = RpcResponseHandler(channel, wait_until, severity, barrier, stop=self.stop)
        log.info(
            "Dispatching %s txs: wait_until=%s severity=%s max outstanding=%s interval=%sus",
            expected, wait_until, severity, capacity, micros,
        )

        async def _dispatch_all():
            timer = time.perf_counter()
            n = await dispatcher.dispatch(plan)
            log.info("Sent %s txs in %.2f seconds", n, time.perf_counter() - timer)
            await dispatcher.drain()
            # every unit has resolved or abandoned its permit
            channel.close()

        collector = asyncio.create_task(handler.handle_all_responses(), name="response_handler")
        dispatching = asyncio.create_task(_dispatch_all(), name="dispatcher")
        try:
            done, _ = await asyncio.wait({collector, dispatching}, return_when=asyncio.FIRST_EXCEPTION)
            for t in (collector, dispatching):
                if t in done and not t.cancelled() and t.exception() is not None:
                    raise t.exception()
            report = await barrier.wait()
        finally:
            for t in (dispatching, collector):
                if not t.done():
                    t.cancel()
            dispatcher.cancel_outstanding()
            await asyncio.gather(dispatching, collector, return_exceptions=True)
            await dispatcher.drain()
            self.last_report = barrier.report()

        return PipelineRun(
            report=report,
            issued=list(dispatcher.issued),
            provisional=barrier.provisional_senders(dispatcher.issued),
        )

    async def refresh_nonces(
        self, accounts: Sequence[Account], user_data_dir: str | Path, *, strict: bool = True
    ) -> int:
        """Replace local nonces with the ones the network reports and write the records.

        Queries are paced so a large account set does not flood the node. With
        strict=False, accounts whose key cannot be queried are skipped.
        """
        micros = self.config.get("nonce_query", {}).get("interval_micros", C.NONCE_QUERY_INTERVAL * 1e6)
        pacer = Pacer.from_micros(micros)
        tasks = []
        for a in accounts:
            await pacer.tick()
            tasks.append(asyncio.create_task(self.client.view_access_key(a.id, a.public_key)))

        results = await asyncio.gather(*tasks, return_exceptions=True)
        written = 0
        for a, res in zip(accounts, results):
            if isinstance(res, BaseException):
                if strict or not isinstance(res, TransportError):
                    raise res
                log.warning("Not writing %s: %s", a.id, res)
                continue
            a.sync_nonce(res.nonce)
            a.persist(user_data_dir)
            written += 1
        return written

    async def _prime_nonce(self, signer: Account, nonce: int | None) -> None:
        if nonce is not None:
            # `nonce` is the first one to use
            signer.sync_nonce(nonce - 1)
            return
        ak = await self.client.view_access_key(signer.id, signer.public_key)
        signer.sync_nonce(ak.nonce)

    async def _send_single(
        self,
        signer: Account,
        receiver_id: str,
        actions: tuple[Action, ...],
        wait_until: TxExecutionStatus,
    ) -> TxResponse:
        block = await self.client.block("final")
        nonce = signer.next_nonce()
        tx = Transaction(
            signer_id=signer.id,
            public_key=signer.public_key,
            nonce=nonce,
            receiver_id=receiver_id,
            block_hash=block.hash,
            actions=actions,
        )
        signed = tx.sign(signer.key)
        signer.commit_nonce(nonce)
        response = await self.client.send_tx(signed, wait_until)
        warn_or_raise(
            check_tx_response(response, wait_until),
            ResponseCheckSeverity.ASSERT,
            context=f"tx {signed.tx_hash} {signer.id} -> {receiver_id}",
        )
        return response

    # ============================================== #
    # ================ Commands ==================== #
    # ============================================== #

    async def create_sub_accounts(
        self,
        signer_key_path: str | Path,
        num_sub_accounts: int,
        deposit: int,
        user_data_dir: str | Path,
        *,
        nonce: int | None = None,
        sub_account_prefix: str | None = None,
        channel_buffer_size: int | None = None,
        interval_micros: int | None = None,
        wait_until: TxExecutionStatus | None = None,
        severity: ResponseCheckSeverity = ResponseCheckSeverity.ASSERT,
    ) -> RunReport:
        check_range("deposit", deposit, U128_MAX)
        signer = Account.from_key_file(signer_key_path)
        user_data_dir = Path(user_data_dir)
        user_data_dir.mkdir(parents=True, exist_ok=True)

        await self._prime_nonce(signer, nonce)
        sub_accounts = [Account.new(sub_account_id(i, signer.id, sub_account_prefix)) for i in range(num_sub_accounts)]
        plan = (
            WorkDescriptor(signer, sub.id, new_create_subaccount_actions(sub.public_key, deposit))
            for sub in sub_accounts
        )

        async with self._block_service() as bs:
            run = await self.run_pipeline(
                plan,
                num_sub_accounts,
                block_hash=bs.get_block_hash,
                wait_until=wait_until,
                severity=severity,
                channel_buffer_size=channel_buffer_size,
                interval_micros=interval_micros,
            )

        # New access keys get their nonce assigned by the node, so ask for it.
        log.info("Querying nonces of newly created sub accounts.")
        created = {item.receiver for item in run.issued}
        written = await self.refresh_nonces(
            [a for a in sub_accounts if a.id in created], user_data_dir, strict=False
        )
        log.info("Wrote %s/%s sub accounts to %s", written, num_sub_accounts, user_data_dir)
        return run.report

    async def _benchmark(
        self,
        accounts: list[Account],
        plan: Iterable[WorkDescriptor],
        expected: int,
        user_data_dir: Path,
        **opts,
    ) -> RunReport:
        before = {a.id: a.nonce for a in accounts}
        by_id = {a.id: a for a in accounts}
        run = None
        try:
            async with self._block_service() as bs:
                run = await self.run_pipeline(plan, expected, block_hash=bs.get_block_hash, **opts)
        finally:
            # committed nonces are persisted even when the run aborts
            for a in accounts:
                if a.nonce != before[a.id]:
                    a.persist(user_data_dir)

        if run.provisional:
            log.info("Re-querying nonces of %s accounts with unconfirmed transactions", len(run.provisional))
            await self.refresh_nonces([by_id[i] for i in sorted(run.provisional)], user_data_dir)
        return run.report

    async def benchmark_native_transfers(
        self,
        user_data_dir: str | Path,
        num_transfers: int,
        *,
        amount: int | None = None,
        selection: SelectionPolicy | None = None,
        seed: int | None = None,
        **opts,
    ) -> RunReport:
        user_data_dir = Path(user_data_dir)
        accounts = account_store.load(user_data_dir)
        amount = self._bench("transfer_amount", amount, 1)
        selection = SelectionPolicy(self._bench("selection", selection, SelectionPolicy.ROUND_ROBIN))
        plan = transfer_plan(accounts, num_transfers, amount, policy=selection, rng=random.Random(seed))
        log.info("Benchmarking %s transfers across %s accounts", num_transfers, len(accounts))
        return await self._benchmark(accounts, plan, num_transfers, user_data_dir, **opts)

    async def benchmark_function_calls(
        self,
        user_data_dir: str | Path,
        receiver_id: str,
        method_name: str,
        args: str,
        num_calls: int,
        *,
        gas: int = C.DEFAULT_GAS,
        deposit: int = 0,
        **opts,
    ) -> RunReport:
        user_data_dir = Path(user_data_dir)
        raw_args = parse_json_object(args)
        accounts = account_store.load(user_data_dir)
        plan = function_call_plan(
            accounts, receiver_id, method_name, raw_args, gas=gas, deposit=deposit, num_calls=num_calls
        )
        log.info("Benchmarking %s calls of %s.%s from %s accounts", num_calls, receiver_id, method_name, len(accounts))
        return await self._benchmark(accounts, plan, num_calls, user_data_dir, **opts)

    async def create_contract(
        self,
        signer_key_path: str | Path,
        new_account_id: str,
        deposit: int,
        user_data_dir: str | Path,
        wasm_path: str | Path,
        *,
        nonce: int | None = None,
        wait_until: TxExecutionStatus = C.DEFAULT_WAIT_UNTIL,
    ) -> Account:
        """Create a sub account of the signer and deploy a contract to it."""
        check_range("deposit", deposit, U128_MAX)
        signer = Account.from_key_file(signer_key_path)
        if not new_account_id.endswith(f".{signer.id}"):
            raise ConfigError(f"{new_account_id} is not a sub account of {signer.id}")
        code = read_wasm_bytes(wasm_path)
        user_data_dir = Path(user_data_dir)
        user_data_dir.mkdir(parents=True, exist_ok=True)

        await self._prime_nonce(signer, nonce)
        contract = Account.new(new_account_id)
        actions = (
            CreateAccount(),
            Transfer(deposit=deposit),
            AddKey(public_key=contract.public_key),
            DeployContract(code=code),
        )
        await self._send_single(signer, new_account_id, actions, wait_until)
        log.info("Deployed %s bytes of wasm to %s", len(code), new_account_id)
        await self.refresh_nonces([contract], user_data_dir)
        return contract

    async def call_contract(
        self,
        signer_key_path: str | Path,
        receiver_id: str,
        method_name: str,
        args: str,
        *,
        gas: int = C.DEFAULT_GAS,
        deposit: int = 0,
        nonce: int | None = None,
        wait_until: TxExecutionStatus = C.DEFAULT_WAIT_UNTIL,
    ) -> TxResponse:
        raw_args = parse_json_object(args)
        check_range("gas", gas, U64_MAX)
        check_range("deposit", deposit, U128_MAX)
        signer = Account.from_key_file(signer_key_path)
        await self._prime_nonce(signer, nonce)
        action = FunctionCall(method_name=method_name, args=raw_args, gas=gas, deposit=deposit)
        response = await self._send_single(signer, receiver_id, (action,), wait_until)
        log.info("Called %s.%s: %s", receiver_id, method_name, response.status_detail)
        return response
