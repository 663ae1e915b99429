import asyncio
import json
import logging

import base58
import pytest

from near_workload.account import Account
from near_workload.constants import TxExecutionStatus
from near_workload.errors import TransportError
from near_workload.rpc import AccessKeyView, BlockView, TxResponse

BLOCK_HASH = base58.b58encode(bytes(range(32))).decode()
SUCCESS = {"SuccessValue": ""}
FAILURE = {"Failure": {"ActionError": {"index": 0, "kind": "LackBalanceForState"}}}


class FakeRpcClient:
    """Stands in for RpcClient. Requests are numbered in the order `send_tx` is entered."""

    def __init__(
        self,
        *,
        delay: float = 0.0,
        level: TxExecutionStatus = TxExecutionStatus.EXECUTED_OPTIMISTIC,
        with_outcome: bool = True,
        fail_at: set[int] = frozenset(),
        bad_at: set[int] = frozenset(),
        nonces: dict[str, int] | None = None,
        default_nonce: int = 1000,
        missing_keys: set[str] = frozenset(),
    ):
        self.delay = delay
        self.level = level
        self.with_outcome = with_outcome
        self.fail_at = fail_at
        self.bad_at = bad_at
        self.nonces = nonces or {}
        self.default_nonce = default_nonce
        self.missing_keys = missing_keys

        self.sent = []
        self.queried: list[str] = []
        self.block_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    async def send_tx(self, signed, wait_until):
        i = len(self.sent)
        self.sent.append(signed)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if i in self.fail_at:
                raise TransportError("connection reset by peer", method="send_tx")
            if not self.with_outcome:
                return TxResponse(final_execution_status=self.level)
            status, detail = next(iter((FAILURE if i in self.bad_at else SUCCESS).items()))
            return TxResponse(
                final_execution_status=self.level,
                status=status,
                status_detail=detail,
                tx_hash=signed.tx_hash,
            )
        finally:
            self.in_flight -= 1

    async def view_access_key(self, account_id, public_key):
        self.queried.append(account_id)
        if account_id in self.missing_keys:
            raise TransportError(f"access key {public_key} does not exist", method="query")
        return AccessKeyView(nonce=self.nonces.get(account_id, self.default_nonce), block_height=100)

    async def block(self, finality="final"):
        self.block_calls += 1
        return BlockView(hash=BLOCK_HASH, height=100 + self.block_calls)

    async def status(self):
        return {"chain_id": "localnet"}


@pytest.fixture(autouse=True)
def _propagate_logs():
    # setup_logging() stops propagation, which hides records from caplog
    logging.getLogger("near_workload").propagate = True


@pytest.fixture
def fake_client():
    return FakeRpcClient()


@pytest.fixture
def make_accounts():
    def _make(n: int, nonce: int = 0, suffix: str = "test.near") -> list[Account]:
        return [Account(f"user_{i}.{suffix}", Account.new("x").key, nonce) for i in range(n)]
    return _make


@pytest.fixture
def accounts_dir(tmp_path, make_accounts):
    d = tmp_path / "user-data"
    d.mkdir()
    for a in make_accounts(3, nonce=5):
        a.persist(d)
    return d


@pytest.fixture
def signer_key_file(tmp_path):
    signer = Account.new("test.near")
    path = tmp_path / "validator_key.json"
    path.write_text(json.dumps({
        "account_id": signer.id,
        "public_key": signer.public_key,
        "private_key": signer.key.secret_key,
    }))
    return path


@pytest.fixture
def workload_cfg(tmp_path):
    return {
        "rpc": {"url": "http://fake", "timeout": 5.0},
        "accounts": {"user_data_dir": str(tmp_path / "user-data")},
        "benchmark": {
            "channel_buffer_size": 10,
            "interval_duration_micros": 200,
            "wait_until": "EXECUTED_OPTIMISTIC",
            "severity": "log",
            "selection": "round_robin",
            "request_timeout": 0,
            "transfer_amount": 1,
        },
        "block_service": {"refresh_interval": 0},
        "nonce_query": {"interval_micros": 1},
        "service": {},
    }
