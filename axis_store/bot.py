import html
import logging
import os

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiogram.filters import Command
from aiogram.types import Message
from dotenv import load_dotenv

from .database import SessionLocal

load_dotenv()

logger = logging.getLogger("bot")

BOT_TOKEN = os.getenv("BOT_TOKEN")
ADMIN_CHAT_ID = os.getenv("ADMIN_CHAT_ID")

_bot: Bot | None = None


def get_bot() -> Bot:
    global _bot
    if not BOT_TOKEN:
        raise RuntimeError("BOT_TOKEN is not set")
    if _bot is None:
        _bot = Bot(token=BOT_TOKEN, default=DefaultBotProperties(parse_mode="HTML"))
    return _bot


def build_admin_dispatcher(admin_chat_id: str):
    dp = Dispatcher()

    def _is_admin(message: Message) -> bool:
        return message.from_user is not None and str(message.from_user.id) == str(admin_chat_id)

    @dp.message(Command("info"))
    async def cmd_info(message: Message):
        if not _is_admin(message):
            return
        from .admin_reports import build_admin_report
        text = await build_admin_report()
        await message.answer(text)

    @dp.message(Command("retry"))
    async def cmd_retry(message: Message):
        if not _is_admin(message):
            return

        parts = (message.text or "").split()
        if len(parts) != 2:
            await message.answer("Usage: /retry ORDER_CODE\nExample: /retry AXS1718000000000AB12C")
            return

        from .delivery import retry_delivery
        from .errors import DeliveryError

        actor = f"telegram:{message.from_user.id}"
        db = SessionLocal()
        try:
            result = await retry_delivery(db, parts[1], actor=actor)
        except DeliveryError as exc:
            await message.answer(f"Retry aborted: {html.escape(str(exc))}")
            return
        finally:
            db.close()

        if result["delivered"]:
            await message.answer(f"Delivered {html.escape(parts[1])}\ncommand={result['command']}")
        else:
            await message.answer(f"Still pending {html.escape(parts[1])}\nerror={html.escape(result['error'])}")

    @dp.message(Command("sweep"))
    async def cmd_sweep(message: Message):
        if not _is_admin(message):
            return

        from .rank_expiry import check_rank_expiry

        db = SessionLocal()
        try:
            summary = await check_rank_expiry(db)
        finally:
            db.close()

        await message.answer(
            f"Rank sweep done\n"
            f"active={summary['totalActiveRanks']}\n"
            f"removed={summary['expiredRanksRemoved']}\n"
            f"reminders={summary['remindersSent']}"
        )

    return dp


async def send_admin_message(chat_id: int | str, text: str):
    await get_bot().send_message(chat_id=chat_id, text=text)


async def notify_admin(text: str) -> bool:
    """Best effort; an unreachable Telegram never affects the caller."""
    if not BOT_TOKEN or not ADMIN_CHAT_ID:
        logger.info("Admin chat not configured, dropping notice: %s", text)
        return False
    try:
        await send_admin_message(ADMIN_CHAT_ID, html.escape(text))
    except Exception:
        logger.exception("Failed to notify admin chat")
        return False
    return True


async def run_admin_bot():
    if not ADMIN_CHAT_ID:
        raise RuntimeError("ADMIN_CHAT_ID is not set")
    dp = build_admin_dispatcher(ADMIN_CHAT_ID)
    await dp.start_polling(get_bot())


if __name__ == "__main__":
    import asyncio

    logging.basicConfig(level=logging.INFO)
    asyncio.run(run_admin_bot())
