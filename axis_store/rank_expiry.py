import logging
from datetime import datetime

from .bot import notify_admin
from .commands import revoke_rank_command
from .errors import InvalidOrderError
from .models import ActiveRank, Order, write_log
from .notifications import send_email
from .rcon import execute_rcon_command
from .utils import as_utc, now_utc

logger = logging.getLogger("rank_expiry")

REMINDER_DAYS_LEFT = 2


def days_left(expires_at: datetime, now: datetime) -> int:
    """Whole UTC calendar days between now and expiry, ignoring time of day."""
    return (as_utc(expires_at).date() - as_utc(now).date()).days


async def _revoke(db, rank: ActiveRank, now: datetime) -> bool:
    try:
        command = revoke_rank_command(rank.minecraft_username, rank.rank_name)
    except InvalidOrderError as exc:
        write_log(db, "error", f"Cannot build revoke for {rank.rank_name} on {rank.minecraft_username}: {exc}",
                  {"rankId": rank.id}, rank.order_id)
        return False

    outcome = await execute_rcon_command(command)
    if not outcome.success:
        logger.error("Failed to remove rank for %s: %s", rank.minecraft_username, outcome.error)
        write_log(db, "error", f"Failed to remove expired rank {rank.rank_name} from {rank.minecraft_username}",
                  {"command": command, "error": outcome.error}, rank.order_id)
        return False

    rank.is_active = False
    rank.removed_at = now
    db.commit()
    write_log(db, "rcon", f"Rank expired and removed: {rank.rank_name} from {rank.minecraft_username}",
              {"command": command, "result": outcome.result, "expiresAt": as_utc(rank.expires_at).isoformat()},
              rank.order_id)
    return True


async def _remind(db, rank: ActiveRank, left: int) -> bool:
    if not rank.order_id:
        return False
    order = db.query(Order).filter(Order.id == rank.order_id).first()
    if not order or not order.user_email:
        return False

    expires_at = as_utc(rank.expires_at).isoformat()
    await send_email("expiry_reminder", order.user_email, {
        "rankName": rank.rank_name,
        "minecraftUsername": rank.minecraft_username,
        "daysLeft": left,
        "expiresAt": expires_at,
    })
    write_log(db, "info", f"Expiry reminder sent: {rank.rank_name} for {rank.minecraft_username} ({left} days left)",
              {"daysLeft": left, "expiresAt": expires_at, "email": order.user_email}, rank.order_id)
    return True


async def check_rank_expiry(db, now: datetime | None = None) -> dict:
    """Revoke expired ranks and send the two-day reminder.

    Meant to run once a day. The reminder fires on an exact day count, so a
    skipped day skips that rank's reminder. Failed revokes stay active and
    are retried on the next run.
    """
    now = as_utc(now) if now else now_utc()
    active_ranks = db.query(ActiveRank).filter(ActiveRank.is_active.is_(True)).all()
    logger.info("Rank expiry check at %s: %d active ranks", now.isoformat(), len(active_ranks))

    expired = []
    reminders = []

    for rank in active_ranks:
        expires_at = as_utc(rank.expires_at)
        left = days_left(expires_at, now)

        if expires_at <= now:
            if await _revoke(db, rank, now):
                expired.append(f"{rank.minecraft_username} - {rank.rank_name}")
        elif left == REMINDER_DAYS_LEFT:
            if await _remind(db, rank, left):
                reminders.append(f"{rank.minecraft_username} - {left} days left")

    summary = {
        "success": True,
        "processedAt": now.isoformat(),
        "totalActiveRanks": len(active_ranks),
        "expiredRanksRemoved": len(expired),
        "expiredRanks": expired,
        "remindersSent": len(reminders),
        "reminders": reminders,
    }
    write_log(db, "admin", f"Rank expiry check: {len(expired)} removed, {len(reminders)} reminders sent", summary)

    if expired:
        await notify_admin(f"Rank sweep removed {len(expired)} expired rank(s)")
    return summary
