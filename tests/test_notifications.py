import json
import logging
import pytest
from unittest.mock import AsyncMock, MagicMock

from reservation_engine.notifications import process_notification_event, render_notification


@pytest.fixture
def mock_message_context():
    """Async context manager standing in for message.process()"""
    class AsyncContextManager:
        async def __aenter__(self):
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            pass

    return AsyncContextManager()


def make_message(body: bytes, context, routing_key="loan.overdue"):
    message = AsyncMock()
    message.body = body
    message.routing_key = routing_key
    message.process = MagicMock(return_value=context)
    return message


@pytest.mark.asyncio
async def test_process_overdue_notice(mock_message_context, caplog):
    """
    Test case 1: A LoanOverdue event is rendered for the borrower.
    """
    message = make_message(json.dumps({
        "event_id": "evt-1",
        "event_type": "LoanOverdue",
        "timestamp": "2026-01-20T09:00:00",
        "reservation_id": "loan-1",
        "item_id": "copy-1",
        "principal_id": "alice",
        "due_at": "2026-01-19T09:00:00",
    }).encode("utf-8"), mock_message_context)

    with caplog.at_level(logging.INFO, logger="reservation_engine.notifications"):
        await process_notification_event(message)

    message.process.assert_called_once()
    assert "To alice: loan loan-1 for copy-1 was due 2026-01-19T09:00:00" in caplog.text


@pytest.mark.asyncio
async def test_process_undecodable_message(mock_message_context, caplog):
    """
    Test case 2: A body that is not JSON is acknowledged and logged, not raised.
    """
    message = make_message(b"not-json", mock_message_context, routing_key="order.expired")

    with caplog.at_level(logging.ERROR, logger="reservation_engine.notifications"):
        await process_notification_event(message)

    message.process.assert_called_once()
    assert "Discarding undecodable notification on order.expired" in caplog.text


def test_render_generic_and_anomaly_events():
    """
    Test case 3: Generic events and payment anomalies render as one-line notices.
    """
    assert render_notification({"event_type": "OrderFulfilled", "order_id": "o-1", "principal_id": "bob"}) == (
        "To bob: OrderFulfilled for o-1"
    )
    anomaly = render_notification({
        "event_type": "PaymentAnomaly",
        "order_id": "o-2",
        "outcome": "CONFIRMED",
        "reason": "confirmed_after_expiry",
    })
    assert anomaly == "To operations: payment CONFIRMED on order o-2 ignored (confirmed_after_expiry)"
