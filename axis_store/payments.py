# axis_store/payments.py
import hashlib
import hmac
import logging
import os
import secrets
import string
import time

import httpx
from dotenv import load_dotenv

from .errors import GatewayNotConfiguredError, OrderNotFoundError, PaymentVerificationError
from .models import Order, write_log

load_dotenv()

logger = logging.getLogger("payments")

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1/orders")

ORDER_CODE_PREFIX = "AXS"
_CODE_ALPHABET = string.ascii_uppercase + string.digits


# ------------------------
# CHECKOUT
# ------------------------
def generate_order_code() -> str:
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(5))
    return f"{ORDER_CODE_PREFIX}{int(time.time() * 1000)}{suffix}"


async def create_gateway_order(amount_rupees: int, receipt: str, notes: dict) -> dict:
    if not RAZORPAY_KEY_ID or not RAZORPAY_KEY_SECRET:
        raise GatewayNotConfiguredError()

    payload = {
        "amount": int(amount_rupees) * 100,
        "currency": "INR",
        "receipt": receipt,
        "notes": notes,
    }

    async with httpx.AsyncClient(auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET)) as client:
        r = await client.post(RAZORPAY_API_URL, json=payload, timeout=15)
        if r.status_code >= 400:
            logger.error("[RAZORPAY] Order creation failed: %s %s", r.status_code, r.text[:500])
        r.raise_for_status()
        return r.json()


# ------------------------
# CALLBACK VERIFICATION
# ------------------------
def compute_signature(gateway_order_id: str, gateway_payment_id: str, secret: str) -> str:
    message = f"{gateway_order_id}|{gateway_payment_id}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(gateway_order_id: str, gateway_payment_id: str, signature: str, secret: str | None = None) -> bool:
    secret = secret or RAZORPAY_KEY_SECRET
    if not secret:
        raise GatewayNotConfiguredError()
    expected = compute_signature(gateway_order_id or "", gateway_payment_id or "", secret)
    return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))


def verify_payment(db, gateway_order_id: str, gateway_payment_id: str, signature: str, order_code: str) -> Order:
    """Authenticate a gateway callback and mark the order paid.

    Delivery is not touched here. A bad signature is rejected before the
    order is even looked up.
    """
    if not verify_signature(gateway_order_id, gateway_payment_id, signature):
        logger.warning("Signature verification failed for order %s", order_code)
        write_log(db, "security", "Payment signature mismatch", {
            "order_code": order_code,
            "razorpay_order_id": gateway_order_id,
        })
        raise PaymentVerificationError()

    order = db.query(Order).filter(Order.order_id == order_code).first()
    if not order:
        logger.error("Valid signature but order %s does not exist", order_code)
        write_log(db, "consistency", f"Verified payment for unknown order {order_code}", {
            "razorpay_order_id": gateway_order_id,
            "razorpay_payment_id": gateway_payment_id,
        })
        raise OrderNotFoundError()

    if order.razorpay_order_id and order.razorpay_order_id != gateway_order_id:
        logger.warning("Gateway order %s was signed for a different order than %s", gateway_order_id, order_code)
        write_log(db, "security", "Payment signed for a different gateway order", {
            "order_code": order_code,
            "razorpay_order_id": gateway_order_id,
        }, order.id)
        raise PaymentVerificationError()

    order.razorpay_payment_id = gateway_payment_id
    # a repeated callback must not roll a delivered order back to paid
    if order.payment_status in ("pending", "failed"):
        order.payment_status = "paid"
    db.commit()

    write_log(db, "payment", f"Payment verified for order {order_code}",
              {"razorpay_payment_id": gateway_payment_id}, order.id)
    return order
