"""API key generation and structural verification.

Keys look like ``mmk_live_<48 random alnum chars>_<6 hex checksum>``. The
checksum lets us reject typos and garbage without touching the database.
"""

import hashlib
import hmac
import re
import secrets
import string
from enum import Enum

KEY_PREFIX = "mmk"
KEY_ALPHABET = string.ascii_letters + string.digits
BODY_LENGTH = 48
CHECKSUM_LENGTH = 6

KEY_PATTERN = re.compile(
    rf"{KEY_PREFIX}_(live|test)_([A-Za-z0-9]{{20,80}})_([0-9a-f]{{{CHECKSUM_LENGTH}}})"
)


class KeyEnvironment(str, Enum):
    """Environment a key is valid for."""

    LIVE = "live"
    TEST = "test"


def _checksum(environment: str, body: str) -> str:
    digest = hashlib.sha256(f"{environment}_{body}".encode()).hexdigest()
    return digest[:CHECKSUM_LENGTH]


class KeyGenerator:
    """Mints API keys and checks their structure."""

    def __init__(self, body_length: int = BODY_LENGTH):
        if not 20 <= body_length <= 80:
            raise ValueError("body_length must be between 20 and 80")
        self.body_length = body_length

    def generate(self, environment: KeyEnvironment | str = KeyEnvironment.LIVE) -> str:
        """Generate a new key for an environment.

        Args:
            environment: ``live`` or ``test``.

        Returns:
            The key string.
        """
        env = KeyEnvironment(environment).value
        body = "".join(secrets.choice(KEY_ALPHABET) for _ in range(self.body_length))
        return f"{KEY_PREFIX}_{env}_{body}_{_checksum(env, body)}"

    @staticmethod
    def is_well_formed(token: object) -> bool:
        """Check prefix, segments, charset, length and checksum.

        Pure function, no lookups. Callers run this before querying storage.
        """
        if not isinstance(token, str):
            return False
        match = KEY_PATTERN.fullmatch(token)
        if match is None:
            return False
        env, body, checksum = match.groups()
        return hmac.compare_digest(checksum, _checksum(env, body))

    @classmethod
    def environment_of(cls, token: str) -> KeyEnvironment | None:
        """Environment of a well-formed key, None otherwise."""
        if not cls.is_well_formed(token):
            return None
        return KeyEnvironment(token.split("_", 2)[1])
