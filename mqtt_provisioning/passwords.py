"""Mosquitto-compatible password hashing helpers.

Mosquitto 2.x accepts PBKDF2-HMAC-SHA512 digests in its password file using
the layout::

    $7$<iterations>$<base64 salt>$<base64 derived key>

The handler below teaches passlib that format so hashes written to the
password artifact can be consumed by the broker without re-hashing, and so
tests and tools can still call :func:`verify_password`.
"""
from __future__ import annotations

import base64
import binascii
import secrets

from passlib.context import CryptContext
from passlib.crypto.digest import pbkdf2_hmac
from passlib.utils import handlers as uh


MOSQUITTO_HASH_IDENT = "$7$"
MOSQUITTO_ITERATIONS = 101
MOSQUITTO_SALT_BYTES = 12
MOSQUITTO_KEY_BYTES = 64

DEFAULT_PASSWORD_BYTES = 16
USERNAME_SUFFIX_BYTES = 4


def _b64encode(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _b64decode(data: str, *, param: str) -> bytes:
    try:
        return base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError):
        raise ValueError(f"invalid base64 {param} in mosquitto hash") from None


class mosquitto_pbkdf2_sha512(
    uh.HasRounds, uh.HasRawSalt, uh.HasRawChecksum, uh.GenericHandler
):
    """passlib handler for mosquitto's ``$7$`` PBKDF2-SHA512 digests."""

    name = "mosquitto_pbkdf2_sha512"
    ident = MOSQUITTO_HASH_IDENT
    setting_kwds = ("salt", "salt_size", "rounds")

    checksum_size = MOSQUITTO_KEY_BYTES

    default_salt_size = MOSQUITTO_SALT_BYTES
    min_salt_size = 1
    max_salt_size = 1024

    default_rounds = MOSQUITTO_ITERATIONS
    min_rounds = 1
    max_rounds = 0xFFFFFFFF
    rounds_cost = "linear"

    @classmethod
    def from_string(cls, hash):
        rounds, salt, checksum = uh.parse_mc3(hash, cls.ident, handler=cls)
        if salt is None:
            raise ValueError("mosquitto hash is missing its salt")
        return cls(
            rounds=rounds,
            salt=_b64decode(salt, param="salt"),
            checksum=_b64decode(checksum, param="checksum") if checksum else None,
        )

    def to_string(self):
        return uh.render_mc3(
            self.ident,
            self.rounds,
            _b64encode(self.salt),
            _b64encode(self.checksum) if self.checksum else None,
        )

    def _calc_checksum(self, secret):
        if isinstance(secret, str):
            secret = secret.encode("utf-8")
        return pbkdf2_hmac(
            "sha512", secret, self.salt, self.rounds, self.checksum_size
        )


_context = CryptContext(schemes=[mosquitto_pbkdf2_sha512])


def hash_password(password: str) -> str:
    """Hash ``password`` into the broker's native ``$7$`` format."""

    if not isinstance(password, str):
        raise TypeError("password must be a string")
    return _context.hash(password)


def verify_password(password: str, hashed_password: str) -> bool:
    """Return ``True`` if ``password`` matches ``hashed_password``."""

    if not password or not hashed_password:
        return False
    try:
        return _context.verify(password, hashed_password)
    except ValueError:
        return False


def generate_password(num_bytes: int = DEFAULT_PASSWORD_BYTES) -> str:
    """Return a random broker password."""

    if num_bytes <= 0:
        raise ValueError("num_bytes must be positive")
    return _b64encode(secrets.token_bytes(num_bytes))


def generate_username(device_id: str) -> str:
    """Return a broker username of the form ``device_<id>_<hex>``."""

    return f"device_{device_id}_{secrets.token_hex(USERNAME_SUFFIX_BYTES)}"


__all__ = [
    "MOSQUITTO_HASH_IDENT",
    "MOSQUITTO_ITERATIONS",
    "generate_password",
    "generate_username",
    "hash_password",
    "mosquitto_pbkdf2_sha512",
    "verify_password",
]
