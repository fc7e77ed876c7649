"""Helpers that keep credentials and card data out of logs."""

import logging
from typing import Any, Iterable, Optional, Set

# Fields dropped from raw provider payloads before they are logged
SENSITIVE_FIELDS = frozenset({
    "client_secret",
    "card",
    "token_id",
    "cvc",
    "number_token",
    "private_key",
    "api_key",
    "authorization",
})


def mask_secret(secret: Optional[str]) -> str:
    """Return ``{first8}...{last4}`` for a credential.

    Secrets too short to mask without revealing most of them are replaced
    entirely.
    """
    if not secret:
        return "<empty>"
    if len(secret) <= 12:
        return "*" * len(secret)
    return f"{secret[:8]}...{secret[-4:]}"


def prefix(value: Optional[str], length: int = 8) -> str:
    """Short prefix for tokens and fingerprints in debug output."""
    if not value:
        return "missing"
    return f"{value[:length]}..."


def sanitize_payload(payload: Any) -> Any:
    """Recursively drop sensitive keys from a provider payload."""
    if payload is None:
        return {}
    if isinstance(payload, dict):
        return {
            key: sanitize_payload(value)
            for key, value in payload.items()
            if key not in SENSITIVE_FIELDS
        }
    if isinstance(payload, list):
        return [sanitize_payload(item) for item in payload]
    return payload


class SecretMaskingFilter(logging.Filter):
    """Replace any registered secret with its masked form.

    Applied to handlers so that a secret interpolated into a message by
    mistake still never reaches the sink in clear text.
    """

    def __init__(self, secrets: Optional[Iterable[str]] = None):
        super().__init__()
        self._secrets: Set[str] = set()
        for secret in secrets or ():
            self.register(secret)

    def register(self, secret: Optional[str]) -> None:
        if secret:
            self._secrets.add(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in self._secrets:
            if secret in masked:
                masked = masked.replace(secret, mask_secret(secret))
        if masked != message:
            record.msg = masked
            record.args = None
        return True

