import asyncio
import os
import struct

os.environ["DATABASE_URL"] = "sqlite://"
for _name in ("BOT_TOKEN", "ADMIN_CHAT_ID", "EMAIL_WEBHOOK_URL", "RCON_HOST", "RCON_PASSWORD", "CRON_SECRET"):
    os.environ.pop(_name, None)
os.environ.setdefault("ADMIN_JWT_SECRET", "test-admin-secret")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test-gateway-secret")

import pytest

from axis_store import delivery, rank_expiry, rcon
from axis_store.database import Base, SessionLocal, engine
from axis_store.models import Order
from axis_store.rcon import DeliveryOutcome, encode_packet


@pytest.fixture
def db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_order(db):
    counter = {"n": 0}

    def _make(**fields):
        counter["n"] += 1
        values = {
            "order_id": f"AXS17000000000{counter['n']:02d}TEST",
            "minecraft_username": "Steve123",
            "product_type": "rank",
            "product_name": "Mythic Rank",
            "amount": 499,
            "razorpay_order_id": f"order_{counter['n']}",
            "payment_status": "paid",
            "delivery_status": "pending",
        }
        values.update(fields)
        order = Order(**values)
        db.add(order)
        db.commit()
        return order

    return _make


class FakeConsole:
    """Stands in for execute_rcon_command and records what would have run."""

    def __init__(self):
        self.commands = []
        self.fail_with = None

    async def __call__(self, command):
        self.commands.append(command)
        if self.fail_with:
            return DeliveryOutcome(success=False, error=self.fail_with)
        return DeliveryOutcome(success=True, result="ok")


@pytest.fixture
def fake_console(monkeypatch):
    console = FakeConsole()
    monkeypatch.setattr(delivery, "execute_rcon_command", console)
    monkeypatch.setattr(rank_expiry, "execute_rcon_command", console)
    return console


class FakeRconServer:
    """Minimal Minecraft console: answers auth and echoes a fixed reply.

    ``silent`` ignores everything, ``ignore_commands`` answers auth only,
    ``raw_reply`` answers commands with those bytes verbatim and
    ``hang_up`` drops the connection when a command arrives.
    """

    def __init__(self, password="secret", reply="Done", silent=False,
                 ignore_commands=False, raw_reply=None, hang_up=False):
        self.password = password
        self.reply = reply
        self.silent = silent
        self.ignore_commands = ignore_commands
        self.raw_reply = raw_reply
        self.hang_up = hang_up
        self.commands = []
        self.server = None
        self.port = None

    async def __aenter__(self):
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]
        return self

    async def __aexit__(self, *exc):
        self.server.close()

    async def _handle(self, reader, writer):
        try:
            while True:
                (length,) = struct.unpack("<i", await reader.readexactly(4))
                data = await reader.readexactly(length)
                request_id, packet_type = struct.unpack("<ii", data[:8])
                body = data[8:-2].decode("utf-8")
                if self.silent:
                    continue
                if packet_type == rcon.SERVERDATA_AUTH:
                    reply_id = request_id if body == self.password else rcon.AUTH_FAILED_ID
                    writer.write(encode_packet(reply_id, rcon.SERVERDATA_EXECCOMMAND, ""))
                else:
                    self.commands.append(body)
                    if self.hang_up:
                        break
                    if self.ignore_commands:
                        continue
                    if self.raw_reply is not None:
                        writer.write(self.raw_reply)
                    else:
                        writer.write(encode_packet(request_id, rcon.SERVERDATA_RESPONSE_VALUE, self.reply))
                await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest.fixture
def fake_rcon_server():
    return FakeRconServer
