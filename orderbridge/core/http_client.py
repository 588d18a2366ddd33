"""
Resilient HTTP Client for Rithum and ShipStation

- Fixed timeout on every call
- Small bounded retry count with exponential backoff and jitter
- 429 detection with Retry-After header respect
- 4xx other than 429 is never retried
- Circuit breaker per host for repeated failures
- Optional one-shot credential refresh on 401

Failures leave this module as TransientNetworkError (worth retrying next
cycle) or PermanentUpstreamError (will not succeed by retrying).
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

import httpx

from orderbridge.core.exceptions import PermanentUpstreamError, TransientNetworkError

logger = logging.getLogger(__name__)

# Longest server-requested pause we sit through before failing the call
MAX_RETRY_AFTER_WAIT = 60.0


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: float = 2.0
    jitter_factor: float = 0.1

    retryable_status_codes: tuple = (429, 500, 502, 503, 504)


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 60.0


@dataclass
class HostState:
    """Tracks state for a specific host."""
    circuit_state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0

    # Set from a 429 Retry-After; every request to the host waits for it
    blocked_until: Optional[float] = None


class ResilientHTTPClient:
    """
    Async HTTP client with built-in resilience patterns.

    Usage:
        async with ResilientHTTPClient(base_url="https://api.example.com") as client:
            response = await client.get("/orders")
    """

    def __init__(
        self,
        service_name: str = "http",
        base_url: str = "",
        retry_config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        timeout: float = 30.0,
        default_headers: Optional[Dict[str, str]] = None,
        auth_headers: Optional[Callable[[], Awaitable[Dict[str, str]]]] = None,
        on_unauthorized: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.service_name = service_name
        self.base_url = base_url.rstrip("/")
        self.retry_config = retry_config or RetryConfig()
        self.circuit_config = circuit_config or CircuitBreakerConfig()
        self.timeout = timeout
        self.default_headers = default_headers or {}
        self.auth_headers = auth_headers
        self.on_unauthorized = on_unauthorized

        self._client: Optional[httpx.AsyncClient] = None
        self._host_states: Dict[str, HostState] = {}

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                follow_redirects=True,
            )
        return self

    async def close(self):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        if not path_or_url.startswith("/"):
            path_or_url = "/" + path_or_url
        return f"{self.base_url}{path_or_url}"

    def _get_host(self, url: str) -> str:
        return urlparse(url).netloc

    def _get_host_state(self, host: str) -> HostState:
        if host not in self._host_states:
            self._host_states[host] = HostState()
        return self._host_states[host]

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Delay before retry number `attempt` (0-based).

        Formula: min(base * (exp_base ^ attempt) +/- jitter, max_delay)
        """
        cfg = self.retry_config
        delay = cfg.base_delay * (cfg.exponential_base ** attempt)
        jitter = delay * cfg.jitter_factor * (2 * random.random() - 1)
        return max(0.0, min(delay + jitter, cfg.max_delay))

    def _check_circuit_breaker(self, host: str) -> bool:
        """Returns True if the request should proceed, False if the circuit is open."""
        state = self._get_host_state(host)
        cfg = self.circuit_config
        now = time.time()

        if state.circuit_state == CircuitState.CLOSED:
            return True

        if state.circuit_state == CircuitState.OPEN:
            if now - state.last_failure_time > cfg.timeout_seconds:
                logger.info(f"[CIRCUIT] {host}: Moving to HALF_OPEN for test request")
                state.circuit_state = CircuitState.HALF_OPEN
                state.success_count = 0
                return True
            remaining = cfg.timeout_seconds - (now - state.last_failure_time)
            logger.warning(f"[CIRCUIT] {host}: OPEN, rejecting request ({remaining:.1f}s until retry)")
            return False

        return True

    def _record_success(self, host: str) -> None:
        state = self._get_host_state(host)
        state.failure_count = 0

        if state.circuit_state == CircuitState.HALF_OPEN:
            state.success_count += 1
            if state.success_count >= self.circuit_config.success_threshold:
                logger.info(f"[CIRCUIT] {host}: Closing circuit after {state.success_count} successes")
                state.circuit_state = CircuitState.CLOSED

    def _record_failure(self, host: str) -> None:
        state = self._get_host_state(host)
        state.failure_count += 1
        state.last_failure_time = time.time()
        state.success_count = 0

        if state.circuit_state == CircuitState.HALF_OPEN:
            logger.warning(f"[CIRCUIT] {host}: Test request failed, reopening circuit")
            state.circuit_state = CircuitState.OPEN
        elif state.failure_count >= self.circuit_config.failure_threshold:
            logger.error(f"[CIRCUIT] {host}: Opening circuit after {state.failure_count} failures")
            state.circuit_state = CircuitState.OPEN

    def _parse_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Parse Retry-After header, returns absolute timestamp."""
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None

        try:
            return time.time() + int(retry_after)
        except ValueError:
            pass

        try:
            return parsedate_to_datetime(retry_after).timestamp()
        except (ValueError, TypeError):
            return None

    async def _wait_if_blocked(self, host: str, url: str) -> None:
        state = self._get_host_state(host)
        if not state.blocked_until:
            return
        wait_time = state.blocked_until - time.time()
        if wait_time <= 0:
            state.blocked_until = None
            return
        if wait_time > MAX_RETRY_AFTER_WAIT:
            raise TransientNetworkError(
                f"{self.service_name} rate limited for {wait_time:.0f}s",
                service=self.service_name,
                status_code=429,
                url=url,
            )
        logger.info(f"[HTTP] {host}: Waiting {wait_time:.1f}s for rate limit to clear")
        await asyncio.sleep(wait_time)
        state.blocked_until = None

    async def _headers_for_request(self, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.auth_headers:
            headers.update(await self.auth_headers())
        if extra:
            headers.update(extra)
        return headers

    async def request(self, method: str, path_or_url: str, **kwargs: Any) -> httpx.Response:
        """
        Make an HTTP request with full resilience.

        Returns the successful (2xx/3xx) response.

        Raises:
            TransientNetworkError: timeout, connect error, 429 or 5xx after retries, open circuit
            PermanentUpstreamError: any other 4xx (the response is attached in details)
        """
        if not self._client:
            await self.init()

        url = self._build_url(path_or_url)
        host = self._get_host(url)

        if not self._check_circuit_breaker(host):
            raise TransientNetworkError(
                f"Circuit breaker OPEN for {host}. Request rejected.",
                service=self.service_name,
                url=url,
            )

        return await self._do_request_with_retry(method, url, host, **kwargs)

    async def _do_request_with_retry(
        self,
        method: str,
        url: str,
        host: str,
        **kwargs: Any,
    ) -> httpx.Response:
        cfg = self.retry_config
        extra_headers = kwargs.pop("headers", None)
        refreshed = False
        last_error: Optional[Exception] = None
        last_status: Optional[int] = None
        attempts = cfg.max_retries + 1

        attempt = 0
        while attempt < attempts:
            await self._wait_if_blocked(host, url)
            headers = await self._headers_for_request(extra_headers)

            try:
                logger.debug(f"[HTTP] {method} {url} (attempt {attempt + 1}/{attempts})")
                response = await self._client.request(method, url, headers=headers, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                self._record_failure(host)
                last_error = e
                if attempt < cfg.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        f"[HTTP] {host}: {type(e).__name__}, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1})"
                    )
                    await asyncio.sleep(delay)
                attempt += 1
                continue

            status = response.status_code

            if status == 401 and self.on_unauthorized and not refreshed:
                # One credential refresh per call; does not consume a retry
                logger.info(f"[HTTP] {host}: 401, refreshing credentials")
                refreshed = True
                await self.on_unauthorized()
                continue

            if status == 429:
                last_status = status
                state = self._get_host_state(host)
                retry_after = self._parse_retry_after(response)
                if retry_after:
                    wait_time = max(0.0, retry_after - time.time())
                else:
                    wait_time = self._calculate_backoff(attempt)
                logger.warning(f"[429] {host}: Rate limited, backing off {wait_time:.1f}s")

                if wait_time > MAX_RETRY_AFTER_WAIT:
                    state.blocked_until = time.time() + wait_time
                    raise TransientNetworkError(
                        f"{self.service_name} rate limited for {wait_time:.0f}s",
                        service=self.service_name,
                        status_code=429,
                        url=url,
                    )
                if attempt < cfg.max_retries:
                    await asyncio.sleep(wait_time)
                attempt += 1
                continue

            if status in cfg.retryable_status_codes:
                self._record_failure(host)
                last_status = status
                if attempt < cfg.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        f"[HTTP] {host}: Status {status}, retrying in {delay:.1f}s "
                        f"(attempt {attempt + 1})"
                    )
                    await asyncio.sleep(delay)
                attempt += 1
                continue

            if 400 <= status < 500:
                logger.error(f"[HTTP] {host}: Fatal status {status} for {method} {url}, not retrying")
                raise PermanentUpstreamError(
                    f"{self.service_name} {method} {url} failed with {status}",
                    service=self.service_name,
                    status_code=status,
                    url=url,
                    details={"body": _safe_body(response)},
                )

            self._record_success(host)
            return response

        logger.error(f"[HTTP] {host}: All {attempts} attempts failed for {method} {url}")
        reason = f"status {last_status}" if last_status else type(last_error).__name__
        raise TransientNetworkError(
            f"{self.service_name} {method} {url} failed after {attempts} attempts ({reason})",
            service=self.service_name,
            status_code=last_status,
            url=url,
        )

    async def get(self, path_or_url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", path_or_url, **kwargs)

    async def post(self, path_or_url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", path_or_url, **kwargs)

    async def put(self, path_or_url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("PUT", path_or_url, **kwargs)

    async def delete(self, path_or_url: str, **kwargs: Any) -> httpx.Response:
        return await self.request("DELETE", path_or_url, **kwargs)


def _safe_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text[:500]


def build_retry_config(max_retries: int, base_delay: float) -> RetryConfig:
    """Retry policy shared by both API clients: base_delay * 2^n between attempts."""
    return RetryConfig(
        max_retries=max_retries,
        base_delay=base_delay,
        max_delay=base_delay * 8,
        exponential_base=2.0,
        jitter_factor=0.1,
    )
