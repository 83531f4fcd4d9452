from __future__ import annotations

import asyncio
import logging
import socket
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, TypeVar

import httpx

if TYPE_CHECKING:
    from .provider import ProviderClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

NOT_FOUND_CODE = 20404
PARTICIPANT_CONFLICT_CODE = 50433


class ProviderError(Exception):
    """Logical error reported by the messaging provider (4xx/5xx with an error body)."""

    def __init__(self, status_code: int, code: int | None, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404 or self.code == NOT_FOUND_CODE

    @property
    def is_participant_conflict(self) -> bool:
        return self.status_code == 409 or self.code == PARTICIPANT_CONFLICT_CODE

    def __str__(self) -> str:
        code = f" code={self.code}" if self.code is not None else ""
        return f"provider error {self.status_code}{code}: {self.message}"


class TransientNetworkError(Exception):
    """Network-level failure that a retry may fix (DNS, refused connection, timeout)."""


TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (
    TransientNetworkError,
    httpx.TransportError,
    socket.gaierror,
    ConnectionRefusedError,
    TimeoutError,
)

# Failures a caller with a sensible fallback is expected to absorb.
REMOTE_ERRORS: tuple[type[BaseException], ...] = (ProviderError, *TRANSIENT_ERRORS)


def is_transient_network_error(exc: BaseException) -> bool:
    current: BaseException | None = exc
    while current is not None:
        if isinstance(current, TRANSIENT_ERRORS):
            return True
        current = current.__cause__
    return False


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    is_retryable: Callable[[BaseException], bool] = is_transient_network_error

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_seconds * (2**attempt)


class ResilientRemoteClient:
    """Runs every provider operation under one retry policy."""

    def __init__(
        self,
        provider: ProviderClient,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._policy = policy or RetryPolicy()
        self._sleep = sleep

    @property
    def provider(self) -> ProviderClient:
        return self._provider

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def call(self, operation: Callable[[ProviderClient], Awaitable[T]], *, description: str = "provider call") -> T:
        attempt = 0
        while True:
            try:
                return await operation(self._provider)
            except Exception as exc:
                if not self._policy.is_retryable(exc) or attempt >= self._policy.max_retries:
                    if attempt:
                        logger.warning("%s failed after %s attempts: %s", description, attempt + 1, exc)
                    raise
                delay = self._policy.delay_for(attempt)
                logger.warning(
                    "%s hit a transient network error (attempt %s/%s), retrying in %.1fs: %s",
                    description,
                    attempt + 1,
                    self._policy.max_attempts,
                    delay,
                    exc,
                )
                await self._sleep(delay)
                attempt += 1

    async def probe(self) -> bool:
        try:
            await self._provider.probe()
        except ProviderError as exc:
            if exc.status_code in {401, 403}:
                logger.warning(
                    "provider connectivity probe was rejected (%s). "
                    "Check TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN.",
                    exc,
                )
            else:
                logger.warning("provider connectivity probe returned an error: %s", exc)
            return False
        except Exception as exc:
            logger.warning(
                "provider connectivity probe failed: %s. "
                "Check DNS resolution for the provider host, outbound firewall rules "
                "and HTTPS_PROXY/NO_PROXY settings. Remote calls will still be attempted.",
                exc,
            )
            return False
        logger.info("provider connectivity probe succeeded")
        return True


def error_code_for(exc: BaseException) -> str:
    if isinstance(exc, ProviderError):
        return str(exc.code) if exc.code is not None else f"http_{exc.status_code}"
    return "network_error"
