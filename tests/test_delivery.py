import asyncio
from datetime import timedelta

import pytest

from axis_store import delivery, rcon
from axis_store.delivery import deliver_order, retry_delivery
from axis_store.errors import DeliveryError
from axis_store.models import ActiveRank, Log
from axis_store.utils import as_utc


def test_rank_delivery_creates_entitlement(db, make_order, fake_console):
    order = make_order(product_type="rank", product_name="Mythic Rank", minecraft_username="Steve123")

    result = asyncio.run(deliver_order(db, order))

    assert result["delivered"] is True
    assert fake_console.commands == ["lp user Steve123 parent addtemp mythic 30d"]

    db.refresh(order)
    assert order.delivery_status == "delivered"
    assert order.payment_status == "delivered"
    assert order.command_executed == "lp user Steve123 parent addtemp mythic 30d"
    assert order.error_log is None

    rank = db.query(ActiveRank).one()
    assert rank.rank_name == "mythic"
    assert rank.minecraft_username == "Steve123"
    assert rank.order_id == order.id
    assert rank.is_active is True
    assert as_utc(rank.expires_at) - as_utc(rank.granted_at) == timedelta(days=30)
    assert db.query(Log).filter(Log.category == "delivery").count() == 1


def test_wrong_console_password_leaves_order_pending(db, make_order, fake_rcon_server, monkeypatch):
    order = make_order(product_type="rank", product_name="Mythic Rank", minecraft_username="Steve123")

    async def scenario():
        async with fake_rcon_server(password="right") as server:
            monkeypatch.setattr(rcon, "RCON_HOST", "127.0.0.1")
            monkeypatch.setattr(rcon, "RCON_PORT", server.port)
            monkeypatch.setattr(rcon, "RCON_PASSWORD", "wrong")
            return await deliver_order(db, order), server.commands

    result, commands = asyncio.run(scenario())

    assert result["delivered"] is False
    assert commands == []
    db.refresh(order)
    assert order.delivery_status == "pending"
    assert order.payment_status == "paid"
    assert order.error_log == "RCON authentication failed"
    assert order.command_executed == "lp user Steve123 parent addtemp mythic 30d"
    assert db.query(ActiveRank).count() == 0
    assert db.query(Log).filter(Log.category == "error").count() == 1


def test_delivery_through_real_console(db, make_order, fake_rcon_server, monkeypatch):
    order = make_order(product_type="money", product_name="10M In-Game Money", minecraft_username="Steve123")

    async def scenario():
        async with fake_rcon_server(password="right") as server:
            monkeypatch.setattr(rcon, "RCON_HOST", "127.0.0.1")
            monkeypatch.setattr(rcon, "RCON_PORT", server.port)
            monkeypatch.setattr(rcon, "RCON_PASSWORD", "right")
            return await deliver_order(db, order), server.commands

    result, commands = asyncio.run(scenario())

    assert result["delivered"] is True
    assert commands == ["economy give Steve123 10000000"]
    assert db.query(ActiveRank).count() == 0


def test_unconfigured_console_is_not_fatal(db, make_order, monkeypatch):
    monkeypatch.setattr(rcon, "RCON_HOST", None)
    order = make_order(product_type="crate", product_name="Astix Crate")

    result = asyncio.run(deliver_order(db, order))

    assert result == {
        "delivered": False,
        "already_delivered": False,
        "command": "crates key give Steve123 astix 1",
        "error": "RCON not configured",
    }
    db.refresh(order)
    assert order.delivery_status == "pending"
    assert order.payment_status == "paid"


def test_gift_recipient_receives_the_item(db, make_order, fake_console):
    order = make_order(product_type="crate", product_name="Void Crate", gift_to="Alex_99")

    asyncio.run(deliver_order(db, order))

    assert fake_console.commands == ["crates key give Alex_99 void 1"]


def test_invalid_recipient_aborts_without_console(db, make_order, fake_console):
    order = make_order(minecraft_username="Steve;op")

    with pytest.raises(DeliveryError, match="Invalid username"):
        asyncio.run(deliver_order(db, order))

    assert fake_console.commands == []
    db.refresh(order)
    assert order.delivery_status == "pending"
    assert order.error_log == "Invalid username format in order"


def test_unknown_product_type_is_reported(db, make_order, fake_console):
    order = make_order(product_type="cosmetic", product_name="Party Hat")

    with pytest.raises(DeliveryError):
        asyncio.run(deliver_order(db, order))

    assert fake_console.commands == []
    db.refresh(order)
    assert order.error_log == "No delivery command for product type cosmetic"


def test_unpaid_order_is_never_delivered(db, make_order, fake_console):
    order = make_order(payment_status="pending")

    with pytest.raises(DeliveryError):
        asyncio.run(deliver_order(db, order))

    assert fake_console.commands == []
    db.refresh(order)
    assert order.delivery_status == "pending"


def test_second_delivery_is_a_no_op(db, make_order, fake_console):
    order = make_order()

    asyncio.run(deliver_order(db, order))
    result = asyncio.run(deliver_order(db, order))

    assert result["already_delivered"] is True
    assert len(fake_console.commands) == 1
    assert db.query(ActiveRank).count() == 1


def test_retry_after_failure(db, make_order, fake_console):
    order = make_order(product_type="money", product_name="1B In-Game Money")
    fake_console.fail_with = "RCON connection timeout"

    first = asyncio.run(retry_delivery(db, order.order_id, actor="admin"))
    db.refresh(order)
    assert first["delivered"] is False
    assert order.error_log == "Retry failed: RCON connection timeout"

    fake_console.fail_with = None
    second = asyncio.run(retry_delivery(db, order.id, actor="admin"))
    db.refresh(order)
    assert second["delivered"] is True
    assert order.delivery_status == "delivered"
    assert order.error_log is None
    assert fake_console.commands == ["economy give Steve123 1000000000"] * 2


def test_repeated_rank_retries_add_entitlement_rows(db, make_order, fake_console):
    order = make_order()

    asyncio.run(deliver_order(db, order))
    asyncio.run(retry_delivery(db, order.order_id, actor="admin"))

    assert db.query(ActiveRank).filter(ActiveRank.order_id == order.id).count() == 2


def test_failed_retry_keeps_delivered_order_delivered(db, make_order, fake_console):
    order = make_order()
    asyncio.run(deliver_order(db, order))

    fake_console.fail_with = "RCON connection timeout"
    result = asyncio.run(retry_delivery(db, order.order_id, actor="admin"))

    db.refresh(order)
    assert result["delivered"] is False
    assert order.payment_status == "delivered"
    assert order.delivery_status == "delivered"
    assert order.error_log == "Retry failed: RCON connection timeout"


def test_retry_unknown_order(db, fake_console):
    with pytest.raises(DeliveryError, match="Order not found"):
        asyncio.run(retry_delivery(db, "AXS_NOPE"))


def test_receipt_failure_does_not_undo_delivery(db, make_order, fake_console, monkeypatch):
    order = make_order(user_email="steve@example.com")

    async def broken_email(kind, to, payload):
        raise RuntimeError("relay down")

    monkeypatch.setattr(delivery, "send_email", broken_email)

    result = asyncio.run(deliver_order(db, order))

    assert result["delivered"] is True
    db.refresh(order)
    assert order.delivery_status == "delivered"


def test_receipt_sent_on_success(db, make_order, fake_console, monkeypatch):
    order = make_order(user_email="steve@example.com")
    sent = []

    async def fake_email(kind, to, payload):
        sent.append((kind, to, payload["orderId"]))
        return {"success": True, "error": None}

    monkeypatch.setattr(delivery, "send_email", fake_email)

    asyncio.run(deliver_order(db, order))

    assert sent == [("receipt", "steve@example.com", order.order_id)]
    assert db.query(Log).filter(Log.category == "email_sent").count() == 1
