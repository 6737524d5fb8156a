"""Single-attempt HTTP request execution with timing and error classification."""

from __future__ import annotations

import asyncio
import socket
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import aiohttp

from loadstage._internal.logging import get_logger
from loadstage.engine.clock import SystemClock
from loadstage.metrics.models import RequestMetric

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from loadstage.engine.clock import Clock

logger = get_logger("engine.executor")


def _noop_callback(metric: RequestMetric) -> None:
    """Default no-op metric callback."""


class ErrorKind(Enum):
    """Transport failure classes.  Failures are reported, never retried."""

    CONNECTION = "connection"
    TIMEOUT = "timeout"
    DNS = "dns"
    TLS = "tls"
    OTHER = "other"


def classify_error(exc: BaseException) -> ErrorKind:
    """Map a transport exception onto an :class:`ErrorKind`.

    Args:
        exc: Exception raised while sending a request.

    Returns:
        The matching error kind; unknown exceptions are ``OTHER``.
    """
    if isinstance(exc, aiohttp.ClientConnectorDNSError):
        return ErrorKind.DNS
    if isinstance(exc, aiohttp.ClientConnectorError) and isinstance(exc.os_error, socket.gaierror):
        return ErrorKind.DNS
    if isinstance(exc, socket.gaierror):
        return ErrorKind.DNS
    if isinstance(
        exc,
        aiohttp.ClientConnectorCertificateError | aiohttp.ClientSSLError | ssl.SSLError,
    ):
        return ErrorKind.TLS
    if isinstance(exc, TimeoutError | aiohttp.ServerTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(
        exc,
        aiohttp.ClientConnectionError | aiohttp.ClientPayloadError | ConnectionError,
    ):
        return ErrorKind.CONNECTION
    return ErrorKind.OTHER


@dataclass
class RequestResult:
    """Outcome of one request, consumed by checks and metrics.

    Attributes:
        url: Full request URL.
        endpoint: Endpoint path the URL was built from.
        status_code: HTTP status code, 0 when no response was received.
        duration_ms: Request duration in milliseconds.
        body: Response body.
        error: Transport error class, None when a response was received.
        error_message: Exception description for transport errors.
    """

    url: str
    endpoint: str
    status_code: int
    duration_ms: float
    body: bytes = b""
    error: ErrorKind | None = None
    error_message: str | None = None

    @property
    def body_size(self) -> int:
        """Return the response body size in bytes."""
        return len(self.body)

    @property
    def failed(self) -> bool:
        """Return True for transport errors and statuses outside 200-399."""
        return self.error is not None or not 200 <= self.status_code < 400

    @property
    def ok(self) -> bool:
        """Return True when a successful response was received."""
        return not self.failed


class RequestExecutor(ABC):
    """Issues one GET per call and reports it as a ``RequestMetric``.

    Subclasses implement :meth:`_send` for a concrete transport.
    :meth:`execute` wraps it: transport exceptions are classified into a
    ``RequestResult`` instead of propagating, and exactly one metric is
    emitted per call whatever the outcome.

    Attributes:
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        *,
        metric_callback: Callable[[RequestMetric], None] | None = None,
        timeout: float = 5.0,
        clock: Clock | None = None,
    ) -> None:
        self.timeout = timeout
        self._metric_callback = metric_callback or _noop_callback
        self._clock: Clock = clock or SystemClock()

    async def __aenter__(self) -> RequestExecutor:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Release transport resources.  The default holds none."""

    async def execute(
        self,
        url: str,
        headers: Mapping[str, str] | None = None,
        *,
        endpoint: str | None = None,
        vu_id: int = -1,
        metric_callback: Callable[[RequestMetric], None] | None = None,
    ) -> RequestResult:
        """Send a single GET request.

        Args:
            url: Absolute request URL.
            headers: Headers sent with the request.
            endpoint: Endpoint path for metric grouping.  Defaults to *url*.
            vu_id: Virtual user issuing the request.
            metric_callback: Receives the request's metric instead of the
                executor-wide callback.

        Returns:
            The request result.  Transport failures are reported through
            ``result.error``; they are not raised and not retried.
        """
        name = endpoint or url
        start = self._clock.monotonic()
        try:
            result = await self._send(url, dict(headers or {}), endpoint=name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            kind = classify_error(exc)
            result = RequestResult(
                url=url,
                endpoint=name,
                status_code=0,
                duration_ms=(self._clock.monotonic() - start) * 1000,
                error=kind,
                error_message=f"{type(exc).__name__}: {exc}",
            )
            logger.debug("Request to %s failed (%s): %s", url, kind.value, exc)

        error = None
        if result.error is not None:
            error = result.error.value
            if result.error_message:
                error = f"{error}: {result.error_message}"
        (metric_callback or self._metric_callback)(
            RequestMetric(
                timestamp=start,
                endpoint=name,
                method="GET",
                url=url,
                status_code=result.status_code,
                latency_ms=result.duration_ms,
                content_length=result.body_size,
                error=error,
                vu_id=vu_id,
            )
        )
        return result

    @abstractmethod
    async def _send(self, url: str, headers: dict[str, str], *, endpoint: str) -> RequestResult:
        """Perform the request and return its result.

        Raises:
            Exception: Any transport error; :meth:`execute` classifies it.
        """


class AiohttpExecutor(RequestExecutor):
    """Executor backed by a shared ``aiohttp.ClientSession`` connection pool.

    The session is created lazily inside the running event loop and
    closed by :meth:`close` or on leaving the async context.
    """

    def __init__(
        self,
        *,
        metric_callback: Callable[[RequestMetric], None] | None = None,
        timeout: float = 5.0,
        pool_size: int = 100,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(metric_callback=metric_callback, timeout=timeout, clock=clock)
        self._pool_size = pool_size
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> AiohttpExecutor:
        self._ensure_session()
        return self

    async def close(self) -> None:
        """Close the underlying aiohttp session."""
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(limit=self._pool_size),
            )
        return self._session

    async def _send(self, url: str, headers: dict[str, str], *, endpoint: str) -> RequestResult:
        session = self._ensure_session()
        start = self._clock.monotonic()
        async with session.get(url, headers=headers) as resp:
            body = await resp.read()
            status = resp.status
        return RequestResult(
            url=url,
            endpoint=endpoint,
            status_code=status,
            duration_ms=(self._clock.monotonic() - start) * 1000,
            body=body,
        )
