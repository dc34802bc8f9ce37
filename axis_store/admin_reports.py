import os
from datetime import datetime, time, timedelta, timezone

import httpx

from .database import SessionLocal
from .models import ActiveRank, Order
from .utils import now_utc

STORE_URL = os.getenv("STORE_URL")


async def _probe_store() -> str:
    if not STORE_URL:
        return "unknown"
    try:
        async with httpx.AsyncClient() as client:
            r = await client.get(STORE_URL, timeout=10)
        return "up" if r.status_code < 400 else "down"
    except httpx.HTTPError:
        return "down"


def collect_daily_stats(db, now: datetime | None = None) -> dict:
    now = now or now_utc()
    start = datetime.combine(now.date(), time(0, 0), tzinfo=timezone.utc)
    end = start + timedelta(days=1)

    delivered = db.query(Order).filter(
        Order.delivery_status == "delivered",
        Order.created_at >= start,
        Order.created_at < end,
    ).all()
    pending = db.query(Order).filter(
        Order.payment_status == "paid",
        Order.delivery_status == "pending",
    ).count()
    active_ranks = db.query(ActiveRank).filter(ActiveRank.is_active.is_(True)).count()
    last = db.query(Order).order_by(Order.created_at.desc()).first()

    return {
        "date": start.date().isoformat(),
        "delivered_orders": len(delivered),
        "delivered_total_inr": sum((o.amount or 0) for o in delivered),
        "pending_deliveries": pending,
        "active_ranks": active_ranks,
        "last_order": (last.order_id, last.payment_status, last.delivery_status) if last else None,
    }


async def build_admin_report() -> str:
    db = SessionLocal()
    try:
        stats = collect_daily_stats(db)
    finally:
        db.close()

    lines = [
        "📊 Admin report",
        f"date={stats['date']}",
        f"delivered_orders={stats['delivered_orders']}",
        f"delivered_total_inr={stats['delivered_total_inr']}",
        f"pending_deliveries={stats['pending_deliveries']}",
        f"active_ranks={stats['active_ranks']}",
        f"store={await _probe_store()}",
    ]
    if stats["last_order"]:
        code, payment, delivery = stats["last_order"]
        lines.append(f"last_order={code} payment={payment} delivery={delivery}")
    return "\n".join(lines)
