"""Tests for web3_infra/rpc_manager.py — failover, chain-id guard, lifecycle."""

from __future__ import annotations

from types import SimpleNamespace

import pytest

from web3_infra.rpc_manager import (
    EndpointMetrics,
    EndpointStatus,
    RPCError,
    RPCManager,
    RPCManagerConfig,
)

URL_A = "https://rpc-a.example/key123"
URL_B = "https://rpc-b.example/key456"


class _FakeEth:
    def __init__(self, chain_id: int) -> None:
        self._chain_id = chain_id

    async def _get(self) -> int:
        return self._chain_id

    @property
    def chain_id(self):
        return self._get()

    @property
    def block_number(self):
        return self._get()


class _BrokenEth:
    async def _fail(self) -> int:
        raise ConnectionError("refused")

    @property
    def chain_id(self):
        return self._fail()


def _factory(chain_ids: dict[str, int] | None = None):
    def make(url: str, timeout_s: float) -> SimpleNamespace:
        return SimpleNamespace(url=url, eth=_FakeEth((chain_ids or {}).get(url, 1)))

    return make


def _config(**overrides) -> RPCManagerConfig:
    defaults = dict(health_check_interval_s=0, max_rounds=1, backoff_base_s=0.0)
    defaults.update(overrides)
    return RPCManagerConfig(**defaults)


class TestEndpointMetrics:

    def test_status_transitions(self) -> None:
        m = EndpointMetrics(url=URL_A)
        m.record_failure("x", down_after=3)
        assert m.status == EndpointStatus.HEALTHY
        m.record_failure("x", down_after=3)
        assert m.status == EndpointStatus.DEGRADED
        m.record_failure("x", down_after=3)
        assert m.status == EndpointStatus.DOWN
        m.record_success(12.0)
        assert m.status == EndpointStatus.HEALTHY
        assert m.consecutive_failures == 0
        assert m.failure_rate == pytest.approx(0.75)


class TestRPCManager:

    def test_requires_endpoint(self) -> None:
        with pytest.raises(ValueError, match="At least one"):
            RPCManager([])

    @pytest.mark.asyncio
    async def test_not_started(self) -> None:
        manager = RPCManager([URL_A], _config(), web3_factory=_factory())
        with pytest.raises(RuntimeError, match="not started"):
            await manager.execute(lambda w3: w3.eth.chain_id)

    @pytest.mark.asyncio
    async def test_execute_primary(self) -> None:
        async with RPCManager([URL_A, URL_B], _config(), web3_factory=_factory()) as manager:
            async def fn(w3):
                return w3.url

            assert await manager.execute(fn) == URL_A
            assert manager.metrics[URL_A].total_requests == 1

    @pytest.mark.asyncio
    async def test_failover_to_secondary(self) -> None:
        async with RPCManager([URL_A, URL_B], _config(), web3_factory=_factory()) as manager:
            async def fn(w3):
                if w3.url == URL_A:
                    raise ConnectionError("primary down")
                return "ok"

            assert await manager.execute(fn) == "ok"
            assert manager.metrics[URL_A].total_failures == 1
            assert manager.metrics[URL_A].last_error == "primary down"
            assert manager.metrics[URL_B].total_requests == 1

    @pytest.mark.asyncio
    async def test_all_fail_raises(self) -> None:
        config = _config(max_rounds=2)
        async with RPCManager([URL_A, URL_B], config, web3_factory=_factory()) as manager:
            async def fn(w3):
                raise TimeoutError(w3.url)

            with pytest.raises(RPCError, match="after 2 rounds") as info:
                await manager.execute(fn)
            assert isinstance(info.value.last_error, TimeoutError)
            assert manager.metrics[URL_A].total_failures == 2

    @pytest.mark.asyncio
    async def test_wrong_chain_endpoint_excluded(self) -> None:
        config = _config(expected_chain_id=1, max_rounds=2)
        factory = _factory({URL_A: 5, URL_B: 1})
        async with RPCManager([URL_A, URL_B], config, web3_factory=factory) as manager:
            assert manager.usable_endpoints == [URL_B]
            assert "chain id 5 != 1" in manager.excluded_endpoints[URL_A]

            seen: list[str] = []

            async def flaky(w3):
                seen.append(w3.url)
                raise ConnectionError("down")

            with pytest.raises(RPCError):
                await manager.execute(flaky)
            with pytest.raises(RPCError):
                await manager.execute_once(flaky)
            assert set(seen) == {URL_B}

            await manager._check_endpoint(URL_A)
            assert manager.metrics[URL_A].total_requests == 0
            assert manager.get_endpoint_status()[0]["excluded"] is True

    @pytest.mark.asyncio
    async def test_excluded_endpoint_stays_excluded_after_success(self) -> None:
        config = _config(expected_chain_id=1)
        factory = _factory({URL_A: 5, URL_B: 1})
        async with RPCManager([URL_A, URL_B], config, web3_factory=factory) as manager:
            async def fn(w3):
                return w3.url

            for _ in range(3):
                assert await manager.execute(fn) == URL_B
            assert manager.metrics[URL_A].status == EndpointStatus.DOWN
            assert URL_A not in manager.usable_endpoints

    @pytest.mark.asyncio
    async def test_single_wrong_chain_endpoint_refuses_to_start(self) -> None:
        manager = RPCManager(
            [URL_A], _config(expected_chain_id=1), web3_factory=_factory({URL_A: 5})
        )
        with pytest.raises(RPCError, match="No RPC endpoint serves chain 1"):
            await manager.start()

        async def fn(w3):
            return w3.url

        with pytest.raises(RuntimeError, match="not started"):
            await manager.execute(fn)

    @pytest.mark.asyncio
    async def test_unverifiable_chain_id_excluded(self) -> None:
        def factory(url: str, timeout_s: float) -> SimpleNamespace:
            if url == URL_A:
                return SimpleNamespace(url=url, eth=_BrokenEth())
            return SimpleNamespace(url=url, eth=_FakeEth(1))

        config = _config(expected_chain_id=1)
        async with RPCManager([URL_A, URL_B], config, web3_factory=factory) as manager:
            assert manager.usable_endpoints == [URL_B]
            assert "chain id check failed" in manager.excluded_endpoints[URL_A]

    @pytest.mark.asyncio
    async def test_health_check_updates_metrics(self) -> None:
        async with RPCManager([URL_A], _config(), web3_factory=_factory()) as manager:
            await manager._check_endpoint(URL_A)
            assert manager.metrics[URL_A].total_requests == 1
            assert manager.metrics[URL_A].status == EndpointStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_stop_idempotent(self) -> None:
        manager = RPCManager([URL_A], _config(health_check_interval_s=60), web3_factory=_factory())
        await manager.start()
        assert manager._health_task is not None
        await manager.stop()
        await manager.stop()
        assert manager._health_task is None

    def test_endpoint_status_redacts_url(self) -> None:
        manager = RPCManager([URL_A], _config(), web3_factory=_factory())
        status = manager.get_endpoint_status()
        assert status[0]["url"] == "https://rpc-a.example:***"
        assert "key123" not in status[0]["url"]

    @pytest.mark.asyncio
    async def test_execute_once_does_not_fail_over(self) -> None:
        async with RPCManager([URL_A, URL_B], _config(max_rounds=3), web3_factory=_factory()) as manager:
            seen: list[str] = []

            async def fn(w3):
                seen.append(w3.url)
                raise ConnectionError("reset")

            with pytest.raises(RPCError) as info:
                await manager.execute_once(fn)
            assert len(seen) == 1
            assert isinstance(info.value.last_error, ConnectionError)
            assert manager.metrics[seen[0]].total_failures == 1

    @pytest.mark.asyncio
    async def test_execute_once_success(self) -> None:
        async with RPCManager([URL_A], _config(), web3_factory=_factory()) as manager:
            async def fn(w3):
                return w3.url

            assert await manager.execute_once(fn) == URL_A
            assert manager.metrics[URL_A].total_requests == 1
