import logging
import re
from decimal import Decimal

from .errors import InvalidOrderError

logger = logging.getLogger("commands")

RANK_TERM = "30d"
MAX_CURRENCY_AMOUNT = Decimal(10) ** 12

_USERNAME_RE = re.compile(r"[A-Za-z0-9_]{3,16}")
_UNSAFE_RE = re.compile(r"[^A-Za-z0-9_-]")
_RANK_SUFFIX_RE = re.compile(r" rank$", re.IGNORECASE)
_CRATE_SUFFIX_RE = re.compile(r" crate$", re.IGNORECASE)
_MONEY_SUFFIX = "In-Game Money"
_MONEY_RE = re.compile(r"(\d+(?:\.\d+)?|\.\d+)\s*([MB])")

_CURRENCY_UNITS = {
    "M": Decimal(1_000_000),
    "B": Decimal(1_000_000_000),
}

CRATE_KEYS = {
    "astix crate": "astix",
    "void crate": "void",
    "spawner crate": "spawner",
    "money crate": "money",
    "keyall crate": "keyall",
    "mythic crate": "mythic",
    "keyall-crate crate": "keyall",
    "money-crate crate": "money",
    "astro-crate crate": "astro",
    "moon-crate crate": "moon",
}

PRODUCT_TYPES = ("rank", "crate", "money")
_PRODUCT_ALIASES = {"currency": "money"}


def normalize_product_type(product_type: str | None) -> str:
    value = (product_type or "").strip().lower()
    return _PRODUCT_ALIASES.get(value, value)


def validate_minecraft_username(username) -> bool:
    if not isinstance(username, str):
        return False
    return _USERNAME_RE.fullmatch(username) is not None


def sanitize_for_rcon(value) -> str:
    """Allow-list filter: anything outside [A-Za-z0-9_-] is dropped."""
    if not isinstance(value, str):
        return ""
    return _UNSAFE_RE.sub("", value)


def rank_token(product_name: str) -> str:
    if not isinstance(product_name, str):
        return ""
    return sanitize_for_rcon(_RANK_SUFFIX_RE.sub("", product_name).lower())


def crate_token(product_name: str) -> str:
    if not isinstance(product_name, str):
        return ""
    normalized = " ".join(product_name.lower().split())
    if normalized in CRATE_KEYS:
        return CRATE_KEYS[normalized]
    return sanitize_for_rcon(_CRATE_SUFFIX_RE.sub("", normalized))


def parse_currency_amount(product_name: str) -> int:
    """Parses '10M In-Game Money' into 10000000."""
    if not isinstance(product_name, str):
        raise InvalidOrderError("Invalid amount in order")

    text = product_name.replace(_MONEY_SUFFIX, "").strip()
    match = _MONEY_RE.fullmatch(text)
    if not match:
        raise InvalidOrderError("Invalid amount in order")

    amount = Decimal(match.group(1)) * _CURRENCY_UNITS[match.group(2)]
    if not amount.is_finite() or amount <= 0 or amount > MAX_CURRENCY_AMOUNT:
        raise InvalidOrderError("Invalid amount in order")
    return int(amount)


def _safe_player(username: str) -> str:
    if not validate_minecraft_username(username):
        raise InvalidOrderError("Invalid username format in order")
    return sanitize_for_rcon(username)


def grant_rank_command(username: str, product_name: str) -> str:
    player = _safe_player(username)
    rank = rank_token(product_name)
    if not rank:
        raise InvalidOrderError("Invalid rank name format")
    return f"lp user {player} parent addtemp {rank} {RANK_TERM}"


def revoke_rank_command(username: str, rank_name: str) -> str:
    player = _safe_player(username)
    rank = sanitize_for_rcon(rank_name)
    if not rank:
        raise InvalidOrderError("Invalid rank name format")
    return f"lp user {player} parent removetemp {rank}"


def give_money_command(username: str, product_name: str) -> str:
    player = _safe_player(username)
    amount = parse_currency_amount(product_name)
    return f"economy give {player} {amount}"


def give_crate_command(username: str, product_name: str) -> str:
    player = _safe_player(username)
    crate = crate_token(product_name)
    if not crate:
        raise InvalidOrderError("Invalid crate name format")
    return f"crates key give {player} {crate} 1"


_BUILDERS = {
    "rank": grant_rank_command,
    "money": give_money_command,
    "crate": give_crate_command,
}


def build_delivery_command(product_type: str, product_name: str, username: str) -> str | None:
    """Returns None for product types that have nothing to run in-game."""
    builder = _BUILDERS.get(normalize_product_type(product_type))
    if builder is None:
        logger.warning("No delivery command for product type %r", product_type)
        return None
    return builder(username, product_name)
