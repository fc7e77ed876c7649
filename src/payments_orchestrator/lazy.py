"""Single-flight lazy construction of processor clients."""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable, Optional

from .exceptions import ProcessorUnavailable

logger = logging.getLogger(__name__)


class InitState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


class LazyClient:
    """
    Builds a client on first use and shares it afterwards.

    Concurrent first callers wait on one lock, so the factory runs once and
    every waiter sees the same outcome. A failed build parks the client in
    ``FAILED``: every later ``get`` raises ``ProcessorUnavailable`` carrying
    the original cause until ``reset`` is called.
    """

    def __init__(self, factory: Callable[[], Any], name: str = "processor"):
        self._factory = factory
        self.name = name
        self.state = InitState.UNINITIALIZED
        self._client: Any = None
        self._error: Optional[BaseException] = None
        self._lock: Optional[asyncio.Lock] = None
        self.construction_count = 0

    def _unavailable(self) -> ProcessorUnavailable:
        return ProcessorUnavailable(
            f"{self.name} client failed to initialize: {self._error}",
            processor_id=self.name,
            cause=self._error,
        )

    async def get(self) -> Any:
        if self.state == InitState.READY:
            return self._client
        if self.state == InitState.FAILED:
            raise self._unavailable()

        # Created on first use so it belongs to the running event loop
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            # Another caller may have finished while we waited
            if self.state == InitState.READY:
                return self._client
            if self.state == InitState.FAILED:
                raise self._unavailable()

            self.state = InitState.INITIALIZING
            logger.info(f"Initializing {self.name} client")
            self.construction_count += 1
            try:
                client = self._factory()
                if inspect.isawaitable(client):
                    client = await client
            except Exception as e:
                self.state = InitState.FAILED
                self._error = e
                logger.error(
                    f"Failed to initialize {self.name} client: {e}",
                    extra={"processor_id": self.name},
                )
                logger.warning(f"{self.name} is degraded; every call will fail until reset")
                raise self._unavailable() from e

            self._client = client
            self.state = InitState.READY
            logger.info(f"{self.name} client initialized")
            return client

    def reset(self) -> None:
        self.state = InitState.UNINITIALIZED
        self._client = None
        self._error = None
        self._lock = None
        logger.debug(f"{self.name} client reset")

    async def aclose(self) -> None:
        client = self._client
        self.reset()
        close = getattr(client, "aclose", None)
        if close is not None:
            await close()
