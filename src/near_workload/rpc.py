"""JSON-RPC client for the node plus the checks applied to `send_tx` responses."""
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

import near_workload.constants as C
from near_workload.constants import ResponseCheckSeverity, TxExecutionStatus
from near_workload.errors import ResponseCheckError, TransportError
from near_workload.transaction import SignedTransaction

log = logging.getLogger("near_workload.rpc")


def _split_status(raw: Any) -> tuple[str, Any]:
    """Statuses arrive either as a bare string ("Unknown") or a one-key object ({"SuccessValue": ""})."""
    if isinstance(raw, str):
        return raw, None
    if isinstance(raw, dict) and len(raw) == 1:
        (kind, detail), = raw.items()
        return kind, detail
    raise TransportError(f"unexpected execution status {raw!r}")


@dataclass(frozen=True, slots=True)
class ExecutionStep:
    id: str | None
    status: str
    detail: Any = None


@dataclass(frozen=True, slots=True)
class TxResponse:
    """Parsed `send_tx` result.

    `status` is None when the node returned no execution outcome, which is what
    `wait_until=NONE` (and INCLUDED) produce.
    """
    final_execution_status: TxExecutionStatus
    status: str | None = None
    status_detail: Any = None
    steps: tuple[ExecutionStep, ...] = field(default_factory=tuple)
    tx_hash: str | None = None

    @property
    def has_outcome(self) -> bool:
        return self.status is not None

    @classmethod
    def from_rpc_result(cls, result: dict) -> "TxResponse":
        try:
            level = TxExecutionStatus(result["final_execution_status"])
        except (KeyError, ValueError, TypeError) as e:
            raise TransportError(f"send_tx result without a known final_execution_status: {e}") from e

        if "status" not in result:
            return cls(final_execution_status=level)

        status, status_detail = _split_status(result["status"])
        steps = []
        outcomes = []
        if result.get("transaction_outcome"):
            outcomes.append(result["transaction_outcome"])
        outcomes.extend(result.get("receipts_outcome") or [])
        for o in outcomes:
            if not isinstance(o, dict) or not isinstance(o.get("outcome"), dict):
                raise TransportError(f"send_tx result with malformed execution outcome {o!r}", method="send_tx")
            kind, detail = _split_status(o["outcome"].get("status"))
            steps.append(ExecutionStep(id=o.get("id"), status=kind, detail=detail))
        transaction = result.get("transaction")
        tx_hash = transaction.get("hash") if isinstance(transaction, dict) else None
        return cls(
            final_execution_status=level,
            status=status,
            status_detail=status_detail,
            steps=tuple(steps),
            tx_hash=tx_hash,
        )


@dataclass(frozen=True, slots=True)
class AccessKeyView:
    nonce: int
    block_height: int | None = None


@dataclass(frozen=True, slots=True)
class BlockView:
    hash: str
    height: int


def check_tx_response(response: TxResponse, wait_until: TxExecutionStatus) -> list[str]:
    """Return every way `response` falls short of what was asked for. Empty means success.

    A stronger completion level than requested is fine. The execution status of the
    transaction and of each receipt is only checked when the node sent an outcome.
    """
    problems = []
    if not response.final_execution_status.satisfies(wait_until):
        problems.append(
            f"got final_execution_status {response.final_execution_status}, expected at least {wait_until}"
        )
    if response.has_outcome:
        if response.status not in C.SUCCESS_STATUSES:
            problems.append(f"transaction status {response.status}: {response.status_detail!r}")
        for step in response.steps:
            if step.status not in C.SUCCESS_STATUSES:
                problems.append(f"receipt {step.id} status {step.status}: {step.detail!r}")
    return problems


def warn_or_raise(problems: list[str], severity: ResponseCheckSeverity, *, context: str = "") -> None:
    """Apply the severity policy to one response. Emits at most one warning record."""
    if not problems:
        return
    msg = "; ".join(problems)
    if context:
        msg = f"{context}: {msg}"
    if severity == ResponseCheckSeverity.ASSERT:
        raise ResponseCheckError(msg)
    log.warning(msg)


class RpcClient:
    """Thin JSON-RPC client. One instance (one connection pool) is shared by every in-flight request."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = C.RPC_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self._ids = itertools.count(1)
        # The admission gate bounds concurrency, so the pool must not.
        self._http = httpx.AsyncClient(
            timeout=timeout,
            transport=transport,
            limits=httpx.Limits(max_connections=None, max_keepalive_connections=100),
        )

    async def __aenter__(self) -> "RpcClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def call(self, method: str, params: dict | list) -> dict:
        payload = {"jsonrpc": "2.0", "id": str(next(self._ids)), "method": method, "params": params}
        try:
            r = await self._http.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(f"{method}: {e.__class__.__name__}: {e}", method=method) from e

        try:
            body = r.json()
        except ValueError as e:
            raise TransportError(f"{method}: HTTP {r.status_code} with non-JSON body", method=method) from e

        if not isinstance(body, dict):
            raise TransportError(f"{method}: unexpected reply {body!r}", method=method)
        if body.get("error"):
            raise TransportError(f"{method}: {body['error']}", method=method)
        if r.is_error:
            raise TransportError(f"{method}: HTTP {r.status_code}", method=method)
        result = body.get("result")
        if not isinstance(result, dict):
            raise TransportError(f"{method}: reply without result", method=method)
        return result

    async def send_tx(self, signed: SignedTransaction, wait_until: TxExecutionStatus) -> TxResponse:
        result = await self.call(
            "send_tx",
            {"signed_tx_base64": signed.to_base64(), "wait_until": str(wait_until)},
        )
        return TxResponse.from_rpc_result(result)

    async def view_access_key(self, account_id: str, public_key: str) -> AccessKeyView:
        result = await self.call(
            "query",
            {
                "request_type": "view_access_key",
                "finality": "optimistic",
                "account_id": account_id,
                "public_key": public_key,
            },
        )
        # Query errors may come back inside an otherwise successful result.
        if "error" in result:
            raise TransportError(f"view_access_key {account_id}: {result['error']}", method="query")
        try:
            return AccessKeyView(nonce=int(result["nonce"]), block_height=result.get("block_height"))
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f"view_access_key {account_id}: unexpected result {result!r}", method="query") from e

    async def block(self, finality: str = "final") -> BlockView:
        result = await self.call("block", {"finality": finality})
        try:
            header = result["header"]
            return BlockView(hash=header["hash"], height=int(header["height"]))
        except (KeyError, TypeError, ValueError) as e:
            raise TransportError(f"block: unexpected result {result!r}", method="block") from e

    async def status(self) -> dict:
        return await self.call("status", [])
