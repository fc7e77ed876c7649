"""Idempotency keys for charge requests.

The processor's own API is the durable idempotency store: these keys live only
for one call and its single permitted fallback.
"""

import uuid
from dataclasses import dataclass, field
from typing import Optional

FALLBACK_SUFFIX = "fallback"


def base_key(method: str, supplied: Optional[str] = None) -> str:
    """Return the caller's key, or ``{method}-{uuid}`` when none was supplied."""
    if supplied:
        return supplied
    return f"{method}-{uuid.uuid4()}"


def derived_key(key: str) -> str:
    """Key for the one fallback retry of ``key``."""
    return f"{key}-{FALLBACK_SUFFIX}"


def step_key(key: str, step: str) -> str:
    """Key for a secondary call made on behalf of the same attempt."""
    return f"{key}-{step}"


@dataclass
class IdempotencyKey:
    """Keys for one logical charge request.

    ``attempt`` is 0 for the original call and 1 once the fallback key has
    been handed out; it can never go higher.
    """

    base_key: str
    attempt: int = 0
    derived_key: Optional[str] = field(default=None)

    @classmethod
    def for_method(cls, method: str, supplied: Optional[str] = None) -> "IdempotencyKey":
        return cls(base_key=base_key(method, supplied))

    @property
    def current(self) -> str:
        return self.derived_key if self.attempt else self.base_key

    def next_attempt(self) -> str:
        """Hand out the fallback key. Allowed once per base key."""
        if self.attempt:
            raise RuntimeError(f"Fallback key for {self.base_key!r} was already used")
        self.attempt = 1
        self.derived_key = derived_key(self.base_key)
        return self.derived_key
