"""RPCManager — JSON-RPC endpoint pool used by the relayer.

Manages one or more RPC endpoints for the chain the authorizer lives on:
- failover to the next endpoint when a call fails
- rounds of retries with exponential backoff once every endpoint failed
- periodic health checks (``eth_blockNumber``) with latency tracking
- optional ``eth_chainId`` guard: an endpoint reporting another network,
  or one whose chain id cannot be read at start, is excluded for the
  lifetime of the manager and never receives a call
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar
from urllib.parse import urlparse

import structlog
from web3 import AsyncWeb3
from web3.providers import AsyncHTTPProvider

logger = structlog.get_logger("web3_infra.rpc_manager")

T = TypeVar("T")

Web3Factory = Callable[[str, float], AsyncWeb3]


class EndpointStatus(str, Enum):
    """Health status of an RPC endpoint."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    DOWN = "DOWN"


@dataclass
class EndpointMetrics:
    """Latency and reliability metrics for a single RPC endpoint."""

    url: str
    status: EndpointStatus = EndpointStatus.HEALTHY
    consecutive_failures: int = 0
    total_requests: int = 0
    total_failures: int = 0
    avg_latency_ms: float = 0.0
    last_error: str | None = None

    @property
    def failure_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.total_failures / self.total_requests

    def record_success(self, latency_ms: float) -> None:
        self.total_requests += 1
        self.consecutive_failures = 0
        self.status = EndpointStatus.HEALTHY
        self.last_error = None
        # EMA, alpha 0.3
        if self.avg_latency_ms == 0.0:
            self.avg_latency_ms = latency_ms
        else:
            self.avg_latency_ms = 0.3 * latency_ms + 0.7 * self.avg_latency_ms

    def record_failure(self, error: str, down_after: int) -> None:
        self.total_requests += 1
        self.total_failures += 1
        self.consecutive_failures += 1
        self.last_error = error
        if self.consecutive_failures >= down_after:
            self.status = EndpointStatus.DOWN
        elif self.consecutive_failures >= 2:
            self.status = EndpointStatus.DEGRADED

    def mark_down(self, error: str) -> None:
        self.status = EndpointStatus.DOWN
        self.last_error = error


@dataclass
class RPCManagerConfig:
    """Configuration for the RPC manager."""

    health_check_interval_s: float = 30.0
    request_timeout_s: float = 10.0
    max_consecutive_failures: int = 5

    # Full passes over the endpoint list before giving up
    max_rounds: int = 3
    backoff_base_s: float = 0.5
    backoff_max_s: float = 8.0

    # Reject endpoints reporting another chain id (None = no check)
    expected_chain_id: int | None = None


def _http_web3(url: str, timeout_s: float) -> AsyncWeb3:
    return AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": timeout_s}))


class RPCManager:
    """Multi-endpoint ``AsyncWeb3`` pool with failover.

    Usage::

        async with RPCManager(["http://127.0.0.1:8545"]) as rpc:
            block = await rpc.execute(lambda w3: w3.eth.get_block("latest"))
    """

    def __init__(
        self,
        endpoints: list[str],
        config: RPCManagerConfig | None = None,
        web3_factory: Web3Factory | None = None,
    ) -> None:
        if not endpoints:
            raise ValueError("At least one RPC endpoint is required")

        self._config = config or RPCManagerConfig()
        self._endpoints = list(endpoints)
        self._factory = web3_factory or _http_web3
        self._metrics: dict[str, EndpointMetrics] = {
            url: EndpointMetrics(url=url) for url in self._endpoints
        }
        self._web3: dict[str, AsyncWeb3] = {}
        # url -> reason; excluded endpoints are never called
        self._excluded: dict[str, str] = {}
        self._health_task: asyncio.Task[None] | None = None
        self._started = False

    @property
    def config(self) -> RPCManagerConfig:
        return self._config

    @property
    def metrics(self) -> dict[str, EndpointMetrics]:
        """Per-endpoint metrics (snapshot of the mapping)."""
        return dict(self._metrics)

    # ── Lifecycle ────────────────────────────────────────────────

    async def start(self) -> None:
        """Create Web3 clients, check chain ids, start health checks. Idempotent."""
        if self._started:
            return

        for url in self._endpoints:
            self._web3[url] = self._factory(url, self._config.request_timeout_s)

        self._excluded.clear()
        if self._config.expected_chain_id is not None:
            await asyncio.gather(
                *(self._check_chain_id(url) for url in self._endpoints)
            )
            if not self.usable_endpoints:
                self._web3.clear()
                raise RPCError(
                    f"No RPC endpoint serves chain {self._config.expected_chain_id}"
                )

        self._started = True
        if self._config.health_check_interval_s > 0:
            self._health_task = asyncio.create_task(
                self._health_check_loop(), name="rpc_health_check"
            )
        logger.info(
            "rpc_manager.started",
            num_endpoints=len(self._endpoints),
            endpoints=[self._redact_url(u) for u in self._endpoints],
            excluded=[self._redact_url(u) for u in self._excluded],
        )

    async def stop(self) -> None:
        """Stop health checks and drop clients. Idempotent."""
        if not self._started:
            return

        if self._health_task is not None:
            self._health_task.cancel()
            try:
                await self._health_task
            except asyncio.CancelledError:
                pass
            self._health_task = None

        self._web3.clear()
        self._started = False
        logger.info("rpc_manager.stopped")

    @property
    def usable_endpoints(self) -> list[str]:
        """Endpoints that passed the chain id guard, in configured order."""
        return [u for u in self._endpoints if u not in self._excluded]

    @property
    def excluded_endpoints(self) -> dict[str, str]:
        """Excluded endpoint -> reason (copy)."""
        return dict(self._excluded)

    # ── Public API ───────────────────────────────────────────────

    async def execute(self, fn: Callable[[AsyncWeb3], Awaitable[T]]) -> T:
        """Run ``fn(w3)`` against the best endpoint, failing over on error.

        ``fn`` may run several times on several endpoints, so it must be
        safe to repeat: reads, gas estimates, transaction building.  Use
        ``execute_once`` for broadcasts.

        Raises
        ------
        RuntimeError
            If the manager has not been started.
        RPCError
            If every endpoint failed in every round.
        """
        self._require_started()

        last_error: Exception | None = None
        for attempt in range(self._config.max_rounds):
            if attempt:
                delay = min(
                    self._config.backoff_base_s * (2 ** (attempt - 1)),
                    self._config.backoff_max_s,
                )
                logger.info("rpc_manager.backoff", round=attempt, delay_s=delay)
                await asyncio.sleep(delay)

            for url in self._endpoints_by_priority():
                try:
                    return await self._call(url, fn)
                except Exception as exc:
                    last_error = exc

        raise RPCError(
            f"All {len(self.usable_endpoints)} RPC endpoints failed "
            f"after {self._config.max_rounds} rounds",
            last_error=last_error,
        )

    async def execute_once(self, fn: Callable[[AsyncWeb3], Awaitable[T]]) -> T:
        """Run ``fn(w3)`` exactly once on the best endpoint; no failover.

        Raises
        ------
        RPCError
            If the call failed; ``last_error`` holds the cause.
        """
        self._require_started()
        url = self._endpoints_by_priority()[0]
        try:
            return await self._call(url, fn)
        except Exception as exc:
            raise RPCError(
                f"RPC call failed on {self._redact_url(url)}", last_error=exc
            ) from exc

    def get_endpoint_status(self) -> list[dict[str, Any]]:
        """Summary of all endpoints for logs / CLI output."""
        return [
            {
                "url": self._redact_url(m.url),
                "status": m.status.value,
                "excluded": m.url in self._excluded,
                "avg_latency_ms": round(m.avg_latency_ms, 1),
                "failure_rate": round(m.failure_rate, 4),
                "last_error": self._excluded.get(m.url, m.last_error),
            }
            for m in self._metrics.values()
        ]

    def _require_started(self) -> None:
        if not self._started:
            raise RuntimeError("RPCManager not started — call start() first")
        if not self.usable_endpoints:
            raise RPCError("No usable RPC endpoint")

    async def _call(self, url: str, fn: Callable[[AsyncWeb3], Awaitable[T]]) -> T:
        metrics = self._metrics[url]
        start = time.monotonic()
        try:
            result = await fn(self._web3[url])
        except Exception as exc:
            metrics.record_failure(str(exc), self._config.max_consecutive_failures)
            logger.warning(
                "rpc_manager.endpoint_failed",
                url=self._redact_url(url),
                error=str(exc),
                consecutive_failures=metrics.consecutive_failures,
            )
            raise
        metrics.record_success((time.monotonic() - start) * 1000)
        return result

    # ── Health checks ────────────────────────────────────────────

    async def _health_check_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._config.health_check_interval_s)
                await asyncio.gather(
                    *(self._check_endpoint(url) for url in self.usable_endpoints),
                    return_exceptions=True,
                )
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("rpc_manager.health_check_error", error=str(exc))

    async def _check_endpoint(self, url: str) -> None:
        metrics = self._metrics[url]
        w3 = self._web3.get(url)
        if w3 is None or url in self._excluded:
            return
        start = time.monotonic()
        try:
            await w3.eth.block_number
        except Exception as exc:
            metrics.record_failure(str(exc), self._config.max_consecutive_failures)
            logger.warning(
                "rpc_manager.health_check_failed",
                url=self._redact_url(url),
                error=str(exc),
            )
            return
        metrics.record_success((time.monotonic() - start) * 1000)

    async def _check_chain_id(self, url: str) -> None:
        expected = self._config.expected_chain_id
        try:
            chain_id = await self._web3[url].eth.chain_id
        except Exception as exc:
            self._exclude(url, f"chain id check failed: {exc}")
            logger.warning(
                "rpc_manager.chain_id_unavailable",
                url=self._redact_url(url),
                error=str(exc),
            )
            return
        if chain_id != expected:
            self._exclude(url, f"chain id {chain_id} != {expected}")
            logger.error(
                "rpc_manager.wrong_chain",
                url=self._redact_url(url),
                chain_id=chain_id,
                expected=expected,
            )

    def _exclude(self, url: str, reason: str) -> None:
        self._excluded[url] = reason
        self._metrics[url].mark_down(reason)

    # ── Endpoint selection ───────────────────────────────────────

    def _endpoints_by_priority(self) -> list[str]:
        """Usable endpoints: healthy, then degraded, then down; by latency within each."""
        rank = {
            EndpointStatus.HEALTHY: 0,
            EndpointStatus.DEGRADED: 1,
            EndpointStatus.DOWN: 2,
        }
        return sorted(
            self.usable_endpoints,
            key=lambda u: (rank[self._metrics[u].status], self._metrics[u].avg_latency_ms),
        )

    @staticmethod
    def _redact_url(url: str) -> str:
        """Show scheme and host only; RPC URLs often embed API keys."""
        parsed = urlparse(url)
        if not parsed.hostname:
            return url[:30] + "..."
        return f"{parsed.scheme}://{parsed.hostname}:***"

    # ── Context manager ──────────────────────────────────────────

    async def __aenter__(self) -> RPCManager:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()


class RPCError(Exception):
    """Raised when all RPC endpoints fail."""

    def __init__(self, message: str, last_error: Exception | None = None) -> None:
        super().__init__(message)
        self.last_error = last_error
