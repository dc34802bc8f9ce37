"""Minecraft remote console (RCON) client.

Packets are little-endian::

    int32 length      # bytes after this field: 4 + 4 + len(body) + 2
    int32 request_id
    int32 packet_type
    body              # UTF-8
    b"\\x00\\x00"

The server echoes the request id, or answers an auth packet with id -1 when
the password is wrong. Only one request is ever outstanding per connection.
"""
import asyncio
import logging
import os
import struct
from dataclasses import dataclass
from typing import NamedTuple

from dotenv import load_dotenv

from .errors import PacketDecodeError, RconError, RconTimeoutError

load_dotenv()

logger = logging.getLogger("rcon")

RCON_HOST = os.getenv("RCON_HOST")
RCON_PORT = int(os.getenv("RCON_PORT", "25575"))
RCON_PASSWORD = os.getenv("RCON_PASSWORD")
RCON_TIMEOUT = float(os.getenv("RCON_TIMEOUT", "10"))

SERVERDATA_AUTH = 3
SERVERDATA_EXECCOMMAND = 2
SERVERDATA_RESPONSE_VALUE = 0

AUTH_FAILED_ID = -1
MIN_PACKET_LENGTH = 10
MAX_PACKET_LENGTH = 1024 * 1024

_HEADER = struct.Struct("<iii")
_LENGTH = struct.Struct("<i")


class Packet(NamedTuple):
    request_id: int
    packet_type: int
    body: str


@dataclass
class DeliveryOutcome:
    success: bool
    result: str | None = None
    error: str | None = None


def encode_packet(request_id: int, packet_type: int, body: str) -> bytes:
    payload = body.encode("utf-8") + b"\x00\x00"
    return _HEADER.pack(8 + len(payload), request_id, packet_type) + payload


def decode_packet(data: bytes) -> Packet:
    if len(data) < 4 + MIN_PACKET_LENGTH:
        raise PacketDecodeError(f"RCON packet too short ({len(data)} bytes)")

    (length,) = _LENGTH.unpack_from(data, 0)
    if length != len(data) - 4:
        raise PacketDecodeError(f"RCON length field {length} does not match {len(data) - 4} bytes")
    if data[-2:] != b"\x00\x00":
        raise PacketDecodeError("RCON packet is missing its terminator")

    _, request_id, packet_type = _HEADER.unpack_from(data, 0)
    body = data[12:-2].decode("utf-8", errors="replace")
    return Packet(request_id, packet_type, body)


async def read_packet(reader: asyncio.StreamReader) -> Packet:
    try:
        header = await reader.readexactly(4)
        (length,) = _LENGTH.unpack(header)
        if length < MIN_PACKET_LENGTH or length > MAX_PACKET_LENGTH:
            raise PacketDecodeError(f"RCON length field out of range: {length}")
        rest = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise PacketDecodeError(f"RCON stream closed after {len(exc.partial)} bytes") from exc
    return decode_packet(header + rest)


class RconClient:
    """One connection to one console. Not safe to share between tasks."""

    def __init__(self, host: str, port: int, password: str, timeout: float = RCON_TIMEOUT):
        self.host = host
        self.port = port
        self.password = password
        self.timeout = timeout
        self.connected = False
        self._request_id = 0
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._closing: asyncio.StreamWriter | None = None

    def _next_request_id(self) -> int:
        self._request_id = self._request_id % 0x7FFFFFFF + 1
        return self._request_id

    async def _exchange(self, packet_type: int, body: str) -> Packet:
        request_id = self._next_request_id()
        self._writer.write(encode_packet(request_id, packet_type, body))
        await self._writer.drain()
        return await read_packet(self._reader)

    async def _handshake(self) -> bool:
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)
        logger.info("RCON socket connected to %s:%s, sending auth", self.host, self.port)
        response = await self._exchange(SERVERDATA_AUTH, self.password)
        return response.request_id != AUTH_FAILED_ID

    async def connect(self) -> bool:
        try:
            authenticated = await asyncio.wait_for(self._handshake(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            self.close()
            raise RconTimeoutError("RCON connection timeout") from exc
        except BaseException:
            self.close()
            raise

        if not authenticated:
            logger.warning("RCON authentication rejected by %s:%s", self.host, self.port)
            self.close()
            return False

        self.connected = True
        return True

    async def send_command(self, command: str) -> str:
        if not self.connected or self._writer is None:
            raise RconError("Not connected")

        logger.info("Sending RCON command: %s", command)
        try:
            response = await asyncio.wait_for(
                self._exchange(SERVERDATA_EXECCOMMAND, command), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            self.close()
            raise RconTimeoutError("RCON command timeout") from exc
        except BaseException:
            self.close()
            raise
        return response.body

    def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            self._closing = self._writer
        self._reader = None
        self._writer = None
        self.connected = False

    async def wait_closed(self) -> None:
        writer, self._closing = self._closing, None
        if writer is None:
            return
        try:
            await writer.wait_closed()
        except OSError as exc:
            logger.debug("RCON socket closed with error: %s", exc)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
        await self.wait_closed()


async def execute_rcon_command(
    command: str,
    host: str | None = None,
    port: int | None = None,
    password: str | None = None,
) -> DeliveryOutcome:
    """Run one command on its own connection. Never raises."""
    host = host or RCON_HOST
    port = port or RCON_PORT
    password = password or RCON_PASSWORD

    if not host or not password:
        return DeliveryOutcome(success=False, error="RCON not configured")

    async with RconClient(host, port, password) as client:
        try:
            if not await client.connect():
                return DeliveryOutcome(success=False, error="RCON authentication failed")
            result = await client.send_command(command)
        except (RconError, OSError) as exc:
            logger.warning("RCON command failed: %s (%s)", command, exc)
            return DeliveryOutcome(success=False, error=str(exc) or exc.__class__.__name__)

    return DeliveryOutcome(success=True, result=result)
