"""Processor credentials and their startup validation."""

import logging
import os
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from .exceptions import ConfigurationError
from .logging_config import get_masking_filter
from .redaction import mask_secret

logger = logging.getLogger(__name__)

CONEKTA = "conekta"
STRIPE = "stripe"

DEFAULT_HTTP_TIMEOUT = 30.0


class EnvironmentClass(str, Enum):
    TEST = "test"
    LIVE = "live"


class Credentials(BaseModel):
    """API keys for one processor."""

    model_config = ConfigDict(frozen=True)

    processor_id: str
    public_key: Optional[str] = None
    private_key: str
    environment_class: EnvironmentClass = EnvironmentClass.TEST

    @property
    def masked_private_key(self) -> str:
        return mask_secret(self.private_key)

    def __repr__(self) -> str:
        return (
            f"Credentials(processor_id={self.processor_id!r}, "
            f"private_key={self.masked_private_key!r}, "
            f"environment_class={self.environment_class.value!r})"
        )

    __str__ = __repr__


# processor_id -> (env var for private key, env var for public key)
ENV_VARS = {
    CONEKTA: ("CONEKTA_PRIVATE_KEY", "CONEKTA_PUBLIC_KEY"),
    STRIPE: ("STRIPE_API_KEY", "STRIPE_PUBLIC_KEY"),
}

# processor_id -> required prefixes for (private, public) keys
KEY_PREFIXES = {
    CONEKTA: ("key_", "key_"),
    STRIPE: ("sk_", "pk_"),
}

# processor_id -> (live prefixes, test prefixes); a heuristic only
CLASS_PREFIXES = {
    CONEKTA: (("key_p",), ("key_t",)),
    STRIPE: (("sk_live_", "rk_live_", "pk_live_"), ("sk_test_", "rk_test_", "pk_test_")),
}


def classify_key(processor_id: str, key: str) -> EnvironmentClass:
    """Guess whether ``key`` is a live or test key from its prefix."""
    live_prefixes, _ = CLASS_PREFIXES.get(processor_id, ((), ()))
    if key.startswith(live_prefixes):
        return EnvironmentClass.LIVE
    return EnvironmentClass.TEST


def is_production(environment: str) -> bool:
    return environment.lower() == "production"


def get_http_timeout(environ: Optional[Mapping[str, str]] = None) -> float:
    environ = os.environ if environ is None else environ
    raw = environ.get("PAYMENTS_HTTP_TIMEOUT")
    if not raw:
        return DEFAULT_HTTP_TIMEOUT
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid PAYMENTS_HTTP_TIMEOUT={raw!r}, using {DEFAULT_HTTP_TIMEOUT}s")
        return DEFAULT_HTTP_TIMEOUT


def validate_credentials(credentials: Credentials, environment: str) -> None:
    """Log format and environment mismatches for a loaded key pair.

    Never raises: key prefixes are a heuristic, not a guarantee.
    """
    processor_id = credentials.processor_id
    private_prefix, public_prefix = KEY_PREFIXES.get(processor_id, ("", ""))

    logger.info(
        f"{processor_id} private key loaded: {credentials.masked_private_key}",
        extra={"processor_id": processor_id, "environment": environment},
    )

    if not credentials.private_key.startswith(private_prefix):
        logger.error(f"Invalid {processor_id} private key format. Key should start with {private_prefix!r}")

    if credentials.public_key is None:
        logger.warning(f"{processor_id} public key is not configured. Frontend payment forms will not work.")
    elif not credentials.public_key.startswith(public_prefix):
        logger.error(f"Invalid {processor_id} public key format. Key should start with {public_prefix!r}")

    live = credentials.environment_class == EnvironmentClass.LIVE
    if live and not is_production(environment):
        logger.warning(f"Using a live {processor_id} key in the non-production environment {environment!r}")
    elif not live and is_production(environment):
        logger.warning(f"Using a test {processor_id} key in production")


class CredentialSource(ABC):
    """Supplies credentials per processor.

    Subclasses implement ``_load``; results are cached for the life of the
    process. ``reset`` exists for test isolation only.
    """

    def __init__(self, environment: str = "development"):
        self.environment = environment
        self._cache: Dict[str, Optional[Credentials]] = {}

    @abstractmethod
    def _load(self, processor_id: str) -> Optional[Credentials]:
        """Return credentials for ``processor_id``, or None when unconfigured."""
        raise NotImplementedError

    def get_credentials(self, processor_id: str) -> Credentials:
        """Return the credentials for ``processor_id``.

        Raises:
            ConfigurationError: If no private key is configured.
        """
        if processor_id not in self._cache:
            credentials = self._load(processor_id)
            if credentials is not None:
                get_masking_filter().register(credentials.private_key)
                validate_credentials(credentials, self.environment)
            self._cache[processor_id] = credentials

        credentials = self._cache[processor_id]
        if credentials is None:
            raise ConfigurationError(
                f"{processor_id} private key is not configured. Payment processing will not work.",
                processor_id=processor_id,
            )
        return credentials

    def check(self, processor_id: str) -> bool:
        """Startup check: fatal in production, a logged error otherwise."""
        try:
            self.get_credentials(processor_id)
        except ConfigurationError as e:
            if is_production(self.environment):
                raise
            logger.error(e.message, extra={"processor_id": processor_id})
            return False
        return True

    def reset(self) -> None:
        self._cache.clear()


class EnvironmentCredentialSource(CredentialSource):
    """Reads processor keys from environment variables."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None, environment: Optional[str] = None):
        self._environ = os.environ if environ is None else environ
        super().__init__(environment or self._environ.get("PAYMENTS_ENV", "development"))

    def _load(self, processor_id: str) -> Optional[Credentials]:
        if processor_id not in ENV_VARS:
            raise ConfigurationError(f"Unknown processor {processor_id!r}", processor_id=processor_id)
        private_var, public_var = ENV_VARS[processor_id]
        private_key = (self._environ.get(private_var) or "").strip()
        if not private_key:
            return None
        public_key = (self._environ.get(public_var) or "").strip() or None
        return Credentials(
            processor_id=processor_id,
            public_key=public_key,
            private_key=private_key,
            environment_class=classify_key(processor_id, private_key),
        )


class StaticCredentialSource(CredentialSource):
    """Credentials handed over directly, e.g. from a secrets manager."""

    def __init__(self, credentials: Mapping[str, Credentials], environment: str = "development"):
        super().__init__(environment)
        self._credentials = dict(credentials)

    def _load(self, processor_id: str) -> Optional[Credentials]:
        return self._credentials.get(processor_id)
