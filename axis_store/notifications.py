import html
import logging
import os

import httpx
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger("notifications")

EMAIL_WEBHOOK_URL = os.getenv("EMAIL_WEBHOOK_URL")
STORE_NAME = os.getenv("STORE_NAME", "Axis SMP")

EMAIL_KINDS = ("receipt", "failed", "expiry_reminder", "bulk")


def _lines_to_html(lines: list[str]) -> str:
    return "".join(f"<p>{html.escape(str(line))}</p>" for line in lines)


def build_email(kind: str, payload: dict) -> tuple[str, str]:
    if kind == "receipt":
        subject = f"✅ Purchase Confirmed - {payload.get('productName')}"
        lines = [
            f"Thanks for shopping at {STORE_NAME}!",
            f"Order: {payload.get('orderId')}",
            f"Item: {payload.get('productName')}",
            f"Amount: ₹{payload.get('amount')}",
            f"Delivered to: {payload.get('giftTo') or payload.get('minecraftUsername')}",
        ]
    elif kind == "failed":
        subject = f"❌ Purchase Failed - {payload.get('productName')}"
        lines = [
            f"We could not complete order {payload.get('orderId')}.",
            "Our team has been notified and will contact you shortly.",
        ]
    elif kind == "expiry_reminder":
        subject = (
            f"😢 Missing Your {payload.get('rankName')} Rank? "
            f"Only {payload.get('daysLeft')} Days Left!"
        )
        lines = [
            f"Hey {payload.get('minecraftUsername')},",
            f"your {payload.get('rankName')} rank expires on {payload.get('expiresAt')}.",
            f"Renew it at the {STORE_NAME} store to keep your perks.",
        ]
    elif kind == "bulk":
        subject = payload.get("subject") or STORE_NAME
        lines = str(payload.get("message") or "").splitlines()
    else:
        raise ValueError(f"Unknown email type: {kind}")
    return subject, _lines_to_html(lines)


async def send_email(kind: str, to: str, payload: dict) -> dict:
    """Fire-and-forget; failures are logged and reported, never raised."""
    if not to:
        return {"success": False, "error": "No recipient"}
    if not EMAIL_WEBHOOK_URL:
        logger.warning("EMAIL_WEBHOOK_URL is not set, skipping %s email to %s", kind, to)
        return {"success": False, "error": "Email not configured"}

    try:
        subject, message = build_email(kind, payload)
        async with httpx.AsyncClient(follow_redirects=True) as client:
            r = await client.post(
                EMAIL_WEBHOOK_URL,
                json={"to": to, "subject": subject, "message": message},
                timeout=15,
            )
        body = r.text.strip()
    except Exception as exc:
        logger.exception("[EMAIL] Failed to send %s email to %s", kind, to)
        return {"success": False, "error": str(exc)}

    if body != "OK":
        logger.warning("[EMAIL] Relay rejected %s email to %s: %s", kind, to, body[:200])
        return {"success": False, "error": body[:200] or f"HTTP {r.status_code}"}

    logger.info("[EMAIL] Sent %s email to %s", kind, to)
    return {"success": True, "error": None}
