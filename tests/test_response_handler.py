import asyncio
import logging

import pytest

from near_workload.constants import ResponseCheckSeverity, TxExecutionStatus
from near_workload.dispatcher import Outcome, WorkItem
from near_workload.errors import ResponseCheckError, TransportError
from near_workload.gate import OutcomeChannel
from near_workload.response_handler import CompletionBarrier, RpcResponseHandler
from near_workload.rpc import TxResponse

S = TxExecutionStatus


def _item(i, sender="a.near"):
    return WorkItem(index=i, sender=sender, receiver="b.near", nonce=i + 1, actions=())


def _ok(i, sender="a.near", level=S.EXECUTED_OPTIMISTIC, status="SuccessValue"):
    return Outcome(item=_item(i, sender), response=TxResponse(level, status=status))


def _handler(expected, severity=ResponseCheckSeverity.LOG, wait_until=S.EXECUTED_OPTIMISTIC):
    channel = OutcomeChannel()
    barrier = CompletionBarrier(expected)
    return channel, barrier, RpcResponseHandler(channel, wait_until, severity, barrier)


@pytest.mark.asyncio
async def test_out_of_order_outcomes_all_counted():
    channel, barrier, handler = _handler(4)
    for i in (3, 0, 2, 1):
        channel.send(_ok(i))

    report = await handler.handle_all_responses()
    assert report.observed == 4
    assert report.shortfall == 0
    assert report.violations == 0
    assert barrier.finished
    assert barrier.confirmed == {0, 1, 2, 3}


@pytest.mark.asyncio
async def test_barrier_waits_for_collector():
    channel, barrier, handler = _handler(2)
    collector = asyncio.create_task(handler.handle_all_responses())
    waiter = asyncio.create_task(barrier.wait())
    channel.send(_ok(0))
    await asyncio.sleep(0.01)
    assert not waiter.done()
    channel.send(_ok(1))
    report = await asyncio.wait_for(waiter, 1)
    assert report.observed == 2
    await collector


@pytest.mark.asyncio
async def test_log_severity_warns_once_and_continues(caplog):
    channel, barrier, handler = _handler(3)
    channel.send(_ok(0))
    channel.send(_ok(1, level=S.INCLUDED, status="Failure"))
    channel.send(_ok(2))

    with caplog.at_level(logging.WARNING, logger="near_workload"):
        report = await handler.handle_all_responses()

    warnings = [r for r in caplog.records if r.name == "near_workload.rpc"]
    assert len(warnings) == 1
    assert "nonce 2" in warnings[0].getMessage()
    assert report.observed == 3
    assert report.violations == 1
    assert not handler.stop.is_set()


@pytest.mark.asyncio
async def test_assert_severity_aborts_on_first_violation():
    channel, barrier, handler = _handler(5, severity=ResponseCheckSeverity.ASSERT)
    for i in range(5):
        channel.send(_ok(i, status="Failure" if i == 2 else "SuccessValue"))

    with pytest.raises(ResponseCheckError):
        await handler.handle_all_responses()
    assert handler.stop.is_set()
    assert barrier.observed == 3
    assert barrier.finished


@pytest.mark.asyncio
@pytest.mark.parametrize("severity", list(ResponseCheckSeverity))
async def test_transport_error_always_aborts(severity):
    channel, barrier, handler = _handler(3, severity=severity)
    channel.send(_ok(0))
    channel.send(Outcome(item=_item(1), error=TransportError("reset", method="send_tx")))

    with pytest.raises(TransportError):
        await handler.handle_all_responses()
    assert handler.stop.is_set()


@pytest.mark.asyncio
async def test_channel_closed_early(caplog):
    channel, barrier, handler = _handler(3)
    channel.send(_ok(0))
    channel.send(_ok(1))
    channel.close()

    with caplog.at_level(logging.WARNING, logger="near_workload"):
        report = await handler.handle_all_responses()

    assert report.shortfall == 1
    assert any("Expected 3 responses but channel closed after 2" in r.getMessage() for r in caplog.records)


@pytest.mark.asyncio
async def test_zero_expected_returns_immediately():
    _, barrier, handler = _handler(0)
    report = await asyncio.wait_for(handler.handle_all_responses(), 1)
    assert report.observed == 0
    assert report.tps == 0.0


def test_provisional_senders():
    barrier = CompletionBarrier(3)
    barrier.observe(_ok(0, sender="a.near"))
    barrier.observe(Outcome(item=_item(1, "b.near"), response=TxResponse(S.NONE)))
    issued = [_item(0, "a.near"), _item(1, "b.near"), _item(2, "c.near")]
    assert barrier.provisional_senders(issued) == {"b.near", "c.near"}


def test_report_as_dict():
    barrier = CompletionBarrier(2)
    barrier.observe(_ok(0))
    d = barrier.report().as_dict()
    assert d["expected"] == 2
    assert d["observed"] == 1
    assert d["shortfall"] == 1
