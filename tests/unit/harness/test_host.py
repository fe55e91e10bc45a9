"""
Host Tests
==========

[BOOTSTRAP] State machine driven with fake node/DHT objects and an
injected sleep, so no sockets are opened.
"""

import asyncio
import os
from types import SimpleNamespace
from typing import List, Set

import pytest

from core.errors import (
    BootstrapError,
    ConfigError,
    FailedToBootstrapError,
    ProvideError,
    ProviderLookupError,
    ShutdownError,
)
from core.peer import AddrInfo
from core.transport import Crypto
from harness.cids import generate_test_cids
from harness.host import BootstrapState, Host, validate_prefix_length

pytestmark = pytest.mark.asyncio


class FakeNode:
    def __init__(self, unreachable: Set[str] = frozenset()):
        self.crypto = Crypto()
        self.node_id = self.crypto.node_id
        self.addr_info = AddrInfo(id=self.node_id, addrs=("/ip4/127.0.0.1/tcp/6000",))
        self.unreachable = set(unreachable)
        self.dialed: List[str] = []
        self.peer_manager = SimpleNamespace(peer_count=0)
        self.stopped = False
        self.stop_error = None

    async def connect(self, info):
        self.dialed.append(info.id)
        if info.id in self.unreachable:
            raise ConnectionError("unreachable")
        self.peer_manager.peer_count += 1

    async def stop(self):
        self.stopped = True
        if self.stop_error:
            raise self.stop_error


class FakeDHT:
    def __init__(self, node: FakeNode):
        self.node = node
        self.provided = []
        self.lookups = []
        self.providers = {}
        self.bootstrapped = False
        self.stopped = False
        self.fail_provide = set()
        self.lookup_error = None
        self.bootstrap_error = None

    async def bootstrap(self):
        if self.bootstrap_error:
            raise self.bootstrap_error
        self.bootstrapped = True
        return 1

    async def provide(self, cid):
        if cid in self.fail_provide:
            raise ProvideError("no peers accepted")
        self.provided.append(cid)
        self.providers.setdefault(cid, []).append(self.node.addr_info)
        return 1

    async def find_providers(self, cid, prefix_length=0):
        self.lookups.append((cid, prefix_length))
        if self.lookup_error:
            raise self.lookup_error
        return list(self.providers.get(cid, []))

    async def stop(self):
        self.stopped = True


class Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, delay):
        self.calls.append(delay)
        await asyncio.sleep(0)


def make_host(ctx, index=0, unreachable=frozenset(), **kwargs):
    node = FakeNode(unreachable)
    dht = FakeDHT(node)
    sleep = Sleeps()
    host = Host(index, node.crypto, node, dht, ctx, sleep=sleep, **kwargs)
    return host, node, dht, sleep


def peers(n: int) -> List[AddrInfo]:
    return [AddrInfo(id=Crypto().node_id, addrs=(f"/ip4/127.0.0.1/tcp/{7000 + i}",)) for i in range(n)]


class TestPrefixLength:
    """Test prefix length validation."""

    @pytest.mark.parametrize("value", [0, 1, 33, 256])
    async def test_valid(self, value):
        assert validate_prefix_length(value) == value

    @pytest.mark.parametrize("value", [-1, 257, 1.5, "8", True])
    async def test_invalid(self, value):
        with pytest.raises(ValueError):
            validate_prefix_length(value)

    async def test_host_rejects_invalid_default(self, fleet_context):
        with pytest.raises(ValueError):
            make_host(fleet_context(), prefix_length=300)

    @pytest.mark.parametrize("value", [-1, 257])
    async def test_create_rejects_before_binding(self, fleet_context, key_dir, value):
        """Test Host.create fails with ConfigError before loading a key or opening a port."""
        with pytest.raises(ConfigError):
            await Host.create(0, fleet_context(), prefix_length=value)
        assert os.listdir(key_dir) == []


class TestBootstrap:
    """Test bootstrap terminal conditions."""

    async def test_empty_registry(self, fleet_context):
        """Test the first node has nothing to dial and is bootstrapped."""
        ctx = fleet_context()
        host, node, dht, _ = make_host(ctx)
        ctx.registry.append(host.addr_info)

        await host.bootstrap()

        assert host.bootstrap_state == BootstrapState.BOOTSTRAPPED
        assert node.dialed == []
        assert dht.bootstrapped

    async def test_excludes_self(self, fleet_context):
        ctx = fleet_context()
        host, node, _, _ = make_host(ctx)
        others = peers(2)
        ctx.registry.append(others[0])
        ctx.registry.append(host.addr_info)
        ctx.registry.append(others[1])

        await host.bootstrap()

        assert node.dialed == [others[0].id, others[1].id]

    async def test_partial_failure_is_success(self, fleet_context):
        ctx = fleet_context()
        others = peers(3)
        for info in others:
            ctx.registry.append(info)
        host, node, _, _ = make_host(ctx, unreachable={others[0].id, others[2].id})

        await host.bootstrap()

        assert host.bootstrap_state == BootstrapState.BOOTSTRAPPED
        assert node.peer_manager.peer_count == 1

    async def test_all_failed(self, fleet_context):
        """Test every attempted dial failing is a terminal failure."""
        ctx = fleet_context()
        others = peers(2)
        for info in others:
            ctx.registry.append(info)
        host, node, dht, sleep = make_host(ctx, unreachable={p.id for p in others})

        with pytest.raises(FailedToBootstrapError) as exc_info:
            await host.bootstrap()

        assert str(exc_info.value) == "failed to bootstrap to any bootnode"
        assert exc_info.value.attempted == 2
        assert host.bootstrap_state == BootstrapState.FAILED
        assert not dht.bootstrapped
        assert sleep.calls == []

    async def test_attempts_capped(self, fleet_context):
        """Test at most max_bootstrap_peers entries are dialed, once each."""
        ctx = fleet_context()
        ctx.settings.max_bootstrap_peers = 10
        others = peers(15)
        for info in others:
            ctx.registry.append(info)
        host, node, _, _ = make_host(ctx)

        await host.bootstrap()

        assert node.dialed == [p.id for p in others[:10]]

    async def test_capped_attempts_all_failed(self, fleet_context):
        ctx = fleet_context()
        ctx.settings.max_bootstrap_peers = 2
        others = peers(4)
        for info in others:
            ctx.registry.append(info)
        host, _, _, _ = make_host(ctx, unreachable={others[0].id, others[1].id})

        with pytest.raises(FailedToBootstrapError):
            await host.bootstrap()

    async def test_settle_delay(self, fleet_context):
        ctx = fleet_context()
        ctx.registry.append(peers(1)[0])
        host, _, _, sleep = make_host(ctx)

        await host.bootstrap()

        assert sleep.calls == [ctx.settings.bootstrap_settle_delay]

    async def test_dht_warmup_failure_wrapped(self, fleet_context):
        ctx = fleet_context()
        host, _, dht, _ = make_host(ctx)
        dht.bootstrap_error = RuntimeError("boom")

        with pytest.raises(BootstrapError):
            await host.bootstrap()


class TestProvideLookup:
    """Test host provide and lookup."""

    async def test_provide_counts_successes(self, fleet_context):
        cids = generate_test_cids(3)
        host, _, dht, _ = make_host(fleet_context())
        dht.fail_provide.add(cids[1])

        assert await host.provide(cids) == 2
        assert dht.provided == [cids[0], cids[2]]

    async def test_lookup_uses_default_prefix(self, fleet_context):
        cid = generate_test_cids(1)[0]
        host, _, dht, _ = make_host(fleet_context(), prefix_length=16)

        await host.lookup(cid)
        await host.lookup(cid, 0)

        assert dht.lookups == [(cid, 16), (cid, 0)]

    async def test_lookup_rejects_bad_prefix_before_network(self, fleet_context):
        cid = generate_test_cids(1)[0]
        host, _, dht, _ = make_host(fleet_context())

        with pytest.raises(ValueError):
            await host.lookup(cid, 257)
        assert dht.lookups == []

    async def test_lookup_error_propagates(self, fleet_context):
        host, _, dht, _ = make_host(fleet_context())
        dht.lookup_error = ProviderLookupError("all queries failed")

        with pytest.raises(ProviderLookupError):
            await host.lookup(generate_test_cids(1)[0])


class TestAutoTest:
    """Test the periodic self-check."""

    async def test_tick_finds_self(self, fleet_context):
        cids = generate_test_cids(4)
        host, _, dht, _ = make_host(fleet_context(test_cids=cids), auto_test=True)

        await host._tick()

        assert host.stats.ticks == 1
        assert host.stats.found_self == 1
        assert dht.provided[0] in cids

    async def test_tick_disabled(self, fleet_context):
        host, _, dht, _ = make_host(fleet_context(test_cids=generate_test_cids(2)))

        await host._tick()

        assert host.stats.ticks == 0
        assert dht.provided == []

    async def test_tick_counts_miss(self, fleet_context):
        cids = generate_test_cids(1)
        host, _, dht, _ = make_host(fleet_context(test_cids=cids), auto_test=True)
        dht.fail_provide.add(cids[0])

        await host._tick()

        assert host.stats.missed_self == 1

    async def test_start_runs_periodic_task(self, fleet_context, wait_for):
        cids = generate_test_cids(2)
        host, _, _, _ = make_host(fleet_context(test_cids=cids), auto_test=True)

        await host.start()
        assert host.periodic_task.running
        assert await wait_for(lambda: host.stats.ticks >= 2)

        await host.stop()
        assert host.periodic_task is None


class TestStop:
    """Test shutdown order and errors."""

    async def test_stop_closes_everything(self, fleet_context):
        host, node, dht, _ = make_host(fleet_context())
        await host.start()

        await host.stop()

        assert dht.stopped
        assert node.stopped

    async def test_stop_error(self, fleet_context):
        host, node, dht, _ = make_host(fleet_context())
        node.stop_error = OSError("close failed")

        with pytest.raises(ShutdownError):
            await host.stop()
        assert dht.stopped
