import re

import pytest

from axis_store.commands import (
    build_delivery_command,
    crate_token,
    parse_currency_amount,
    rank_token,
    revoke_rank_command,
    sanitize_for_rcon,
    validate_minecraft_username,
)
from axis_store.errors import InvalidOrderError


@pytest.mark.parametrize("name", ["Steve", "Steve123", "abc", "a_b_c_d_e_f_g_h_", "___"])
def test_valid_usernames(name):
    assert validate_minecraft_username(name)


@pytest.mark.parametrize("name", [
    "ab",
    "a" * 17,
    "Steve 123",
    "Steve;op",
    "Stéve",
    "Steve\n",
    "",
    None,
    123,
])
def test_invalid_usernames(name):
    assert not validate_minecraft_username(name)


def test_sanitizer_drops_everything_outside_allow_list():
    assert sanitize_for_rcon("vip; op Steve && say hi") == "vipopStevesayhi"
    assert sanitize_for_rcon("rank-name_2") == "rank-name_2"
    assert sanitize_for_rcon(None) == ""


@pytest.mark.parametrize("value", ["", "plain", "a b\tc", "§4red", "x/../y", "ünïcödé", "-_-", "; rm -rf /"])
def test_sanitizer_is_idempotent_and_safe(value):
    once = sanitize_for_rcon(value)
    assert sanitize_for_rcon(once) == once
    assert re.fullmatch(r"[A-Za-z0-9_-]*", once)


def test_rank_token_strips_suffix_case_insensitively():
    assert rank_token("Mythic Rank") == "mythic"
    assert rank_token("Legend RANK") == "legend"
    assert rank_token("Rank Master") == "rankmaster"
    assert rank_token("V.I.P Rank") == "vip"


@pytest.mark.parametrize("name,expected", [
    ("10M In-Game Money", 10_000_000),
    ("1B In-Game Money", 1_000_000_000),
    ("2.3M In-Game Money", 2_300_000),
    ("1.5B In-Game Money", 1_500_000_000),
    ("1000B In-Game Money", 1_000_000_000_000),
])
def test_currency_amounts(name, expected):
    assert parse_currency_amount(name) == expected


@pytest.mark.parametrize("name", [
    "0M In-Game Money",
    "1001B In-Game Money",
    "In-Game Money",
    "abcM In-Game Money",
    "10K In-Game Money",
    "10 In-Game Money",
])
def test_currency_amounts_rejected(name):
    with pytest.raises(InvalidOrderError):
        parse_currency_amount(name)


def test_crate_lookup_and_fallback():
    assert crate_token("Astix Crate") == "astix"
    assert crate_token("  Moon-Crate   Crate ") == "moon"
    assert crate_token("Legendary Crate") == "legendary"
    assert crate_token("!!! Crate") == ""


def test_rank_command():
    assert build_delivery_command("rank", "Mythic Rank", "Steve123") == \
        "lp user Steve123 parent addtemp mythic 30d"


def test_money_command():
    assert build_delivery_command("money", "10M In-Game Money", "Steve123") == "economy give Steve123 10000000"
    assert build_delivery_command("currency", "10M In-Game Money", "Steve123") == "economy give Steve123 10000000"


def test_crate_command():
    assert build_delivery_command("crate", "Void Crate", "Alex_99") == "crates key give Alex_99 void 1"


def test_invalid_inputs_never_reach_a_command():
    with pytest.raises(InvalidOrderError):
        build_delivery_command("rank", "Mythic Rank", "Steve;op Steve")
    with pytest.raises(InvalidOrderError):
        build_delivery_command("rank", "!!! Rank", "Steve123")
    with pytest.raises(InvalidOrderError):
        build_delivery_command("crate", "*** Crate", "Steve123")


def test_unknown_product_type_has_no_command():
    assert build_delivery_command("cosmetic", "Hat", "Steve123") is None


def test_revoke_command():
    assert revoke_rank_command("Steve123", "mythic") == "lp user Steve123 parent removetemp mythic"
