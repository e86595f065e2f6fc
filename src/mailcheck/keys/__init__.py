"""API key module.

Provides key generation and structural verification. The FastAPI
authentication dependency lives in ``mailcheck.keys.auth``.
"""

from mailcheck.keys.generator import KeyEnvironment, KeyGenerator

__all__ = [
    "KeyEnvironment",
    "KeyGenerator",
]
