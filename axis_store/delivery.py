import logging
from datetime import timedelta

from sqlalchemy import or_

from .bot import notify_admin
from .commands import build_delivery_command, normalize_product_type, rank_token, sanitize_for_rcon
from .errors import DeliveryError, InvalidOrderError
from .models import ActiveRank, Order, write_log
from .notifications import send_email
from .rcon import execute_rcon_command
from .utils import now_utc

logger = logging.getLogger("delivery")

RANK_DURATION = timedelta(days=30)
PAID_STATUSES = ("paid", "delivered")


def find_order(db, reference: str) -> Order | None:
    """Look an order up by internal id or by its public code."""
    return db.query(Order).filter(or_(Order.id == reference, Order.order_id == reference)).first()


def _fail_attempt(db, order: Order, error: str, command: str | None = None) -> None:
    # an item that already reached the player stays delivered
    if order.delivery_status != "delivered":
        order.delivery_status = "pending"
    if command is not None:
        order.command_executed = command
    order.error_log = error
    db.commit()
    write_log(db, "error", f"Delivery failed for order {order.order_id}: {error}",
              {"command": command, "error": error}, order.id)


async def _send_receipt(db, order: Order) -> None:
    if not order.user_email:
        return
    try:
        result = await send_email("receipt", order.user_email, {
            "orderId": order.order_id,
            "productName": order.product_name,
            "amount": order.amount,
            "minecraftUsername": order.minecraft_username,
            "giftTo": order.gift_to,
        })
        write_log(db, "email_sent" if result["success"] else "email_error",
                  f"Email receipt to {order.user_email}: {'Success' if result['success'] else 'Failed'}",
                  {"emailType": "receipt", "details": result.get("error") or "OK"}, order.id)
    except Exception:
        logger.exception("Receipt for order %s could not be sent", order.order_id)


async def deliver_order(db, order: Order, retry: bool = False, actor: str | None = None) -> dict:
    """Apply a paid order in-game.

    Without ``retry`` an order that is already delivered is left alone, so a
    duplicated callback never runs the command twice. Console failures leave
    the order pending with ``error_log`` set and are returned, not raised.
    Orders that can never produce a safe command raise ``DeliveryError``.
    """
    if order.payment_status not in PAID_STATUSES:
        raise DeliveryError(f"Order {order.order_id} has not been paid")

    if order.delivery_status == "delivered" and not retry:
        logger.info("Order %s already delivered, skipping", order.order_id)
        return {"delivered": True, "already_delivered": True, "command": order.command_executed, "error": None}

    try:
        command = build_delivery_command(order.product_type, order.product_name, order.recipient)
    except InvalidOrderError as exc:
        _fail_attempt(db, order, str(exc))
        raise DeliveryError(str(exc)) from exc

    if command is None:
        error = f"No delivery command for product type {order.product_type}"
        _fail_attempt(db, order, error)
        raise DeliveryError(error)

    outcome = await execute_rcon_command(command)
    source = f" by {actor}" if actor else ""

    if not outcome.success:
        error = outcome.error or "RCON command failed"
        if retry:
            error = f"Retry failed: {error}"
        if order.delivery_status != "delivered":
            order.payment_status = "paid"
        _fail_attempt(db, order, error, command)
        await notify_admin(f"⚠️ Delivery pending for {order.order_id} ({order.product_name}): {error}")
        return {"delivered": False, "already_delivered": False, "command": command, "error": error}

    now = now_utc()
    if normalize_product_type(order.product_type) == "rank":
        db.add(ActiveRank(
            order_id=order.id,
            minecraft_username=sanitize_for_rcon(order.recipient),
            rank_name=rank_token(order.product_name),
            granted_at=now,
            expires_at=now + RANK_DURATION,
        ))

    order.payment_status = "delivered"
    order.delivery_status = "delivered"
    order.command_executed = command
    order.error_log = None
    db.commit()

    verb = "Retry delivery" if retry else "Delivered"
    write_log(db, "delivery", f"{verb} {order.product_name} to {order.recipient}{source}",
              {"command": command, "result": outcome.result, "retry": retry, "admin": actor}, order.id)

    await _send_receipt(db, order)
    return {"delivered": True, "already_delivered": False, "command": command, "error": None}


async def retry_delivery(db, reference: str, actor: str | None = None) -> dict:
    order = find_order(db, reference)
    if not order:
        raise DeliveryError("Order not found")
    logger.info("Retrying delivery of %s requested by %s", order.order_id, actor or "system")
    return await deliver_order(db, order, retry=True, actor=actor)
