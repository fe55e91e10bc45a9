"""
dht-tester Test Configuration
=============================

[QA] Central pytest configuration with fixtures for all test types:
- Unit tests: Isolated, no real network, fast
- Integration tests: Real localhost TCP on OS-assigned ports

[FIXTURES]
- temp_dir / key_dir: Per-test temporary directories
- fast_settings: FleetSettings with short delays and ephemeral ports
- fleet_context: FleetContext bound to a temp key dir
- node_factory: Spawn N core Nodes on localhost
- fake_api: In-memory fleet API (num_hosts / provide / lookup / id)

Usage:
    pytest tests/unit/          # Fast unit tests
    pytest tests/integration/   # Localhost fleet tests
"""

import asyncio
import logging
import shutil
import sys
import tempfile
import time
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict, Generator, List, Tuple

import pytest
import pytest_asyncio

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))


# ============================================================================
# Pytest Configuration
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "integration: Integration tests (I/O, slower)")
    config.addinivalue_line("markers", "slow: Slow tests (skip with -m 'not slow')")


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their path."""
    for item in items:
        if "/unit/" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


# ============================================================================
# Logging Configuration
# ============================================================================

@pytest.fixture(scope="session", autouse=True)
def configure_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.WARNING,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    # Silence noisy loggers during tests
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# ============================================================================
# Temporary Directory Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    temp_path = Path(tempfile.mkdtemp(prefix="dht_tester_test_"))
    yield temp_path
    shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture(scope="function")
def key_dir(temp_dir: Path) -> str:
    """Directory for node-<i>.key files."""
    path = temp_dir / "keys"
    path.mkdir()
    return str(path)


# ============================================================================
# Crypto Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def crypto():
    """Create fresh Crypto identity for each test."""
    from core.transport import Crypto
    return Crypto()


@pytest.fixture(scope="function")
def crypto_pair():
    """Create a pair of Crypto identities for sender/receiver tests."""
    from core.transport import Crypto
    return Crypto(), Crypto()


# ============================================================================
# Fleet Fixtures
# ============================================================================

@pytest.fixture(scope="function")
def fast_settings():
    """FleetSettings with ephemeral ports and short delays."""
    from harness.registry import FleetSettings

    return FleetSettings(
        base_port=0,
        connection_timeout=2.0,
        request_timeout=2.0,
        bootstrap_settle_delay=0.05,
        fleet_settle_delay=0.05,
        auto_test_min_interval=0.05,
        auto_test_jitter=0.0,
    )


@pytest.fixture(scope="function")
def fleet_context(key_dir: str, fast_settings):
    """Factory for FleetContext bound to the per-test key dir."""
    import random
    from harness.registry import FleetContext

    def _create(test_cids=None, seed: int = 1) -> FleetContext:
        return FleetContext(
            test_cids=list(test_cids or []),
            key_dir=key_dir,
            settings=fast_settings,
            rng=random.Random(seed),
        )

    return _create


# ============================================================================
# Node Factory Fixture
# ============================================================================

class NodeFactory:
    """
    Factory for spawning core Nodes on localhost.

    [USAGE]
        nodes = await node_factory.create(3)  # Create and start 3 nodes
        await node_factory.cleanup()           # Cleanup after test
    """

    def __init__(self):
        self.nodes: List = []

    async def create(self, count: int = 1, request_timeout: float = 2.0) -> List:
        from core.node import Node
        from core.transport import Crypto

        created = []
        for _ in range(count):
            node = Node(
                Crypto(),
                host="127.0.0.1",
                port=0,
                connection_timeout=2.0,
                request_timeout=request_timeout,
            )
            await node.start()
            self.nodes.append(node)
            created.append(node)
        return created

    async def cleanup(self) -> None:
        for node in self.nodes:
            await node.stop()
        self.nodes.clear()


@pytest_asyncio.fixture(scope="function")
async def node_factory() -> AsyncGenerator[NodeFactory, None]:
    """Fixture providing NodeFactory for spawning test nodes."""
    factory = NodeFactory()
    yield factory
    await factory.cleanup()


# ============================================================================
# Fake Fleet API
# ============================================================================

class FakeFleetAPI:
    """
    In-memory stand-in for Fleet / RPCClient.

    Lookups return every recorded provider of the CID unless a result
    is pinned with ``set_lookup`` or an error with ``fail_lookup``.
    """

    def __init__(self, count: int):
        from core.peer import AddrInfo

        self.count = count
        self.ids = [f"peer-{i}" for i in range(count)]
        self.providers: Dict[object, List[int]] = {}
        self.pinned: Dict[Tuple[int, object], List] = {}
        self.errors: Dict[Tuple[int, object], Exception] = {}
        self.calls: List[Tuple] = []
        self.lookup_delay = 0.0
        self._addr_info = AddrInfo

    def _check(self, index: int) -> None:
        from core.errors import IndexOutOfRangeError

        if not 0 <= index < self.count:
            raise IndexOutOfRangeError(index, self.count)

    async def num_hosts(self) -> int:
        self.calls.append(("num_hosts",))
        return self.count

    async def provide(self, host_index: int, cids) -> None:
        self._check(host_index)
        self.calls.append(("provide", host_index, list(cids)))
        for cid in cids:
            hosts = self.providers.setdefault(cid, [])
            if host_index not in hosts:
                hosts.append(host_index)

    async def lookup(self, host_index: int, cid, prefix_length: int = 0) -> List:
        self._check(host_index)
        self.calls.append(("lookup", host_index, cid, prefix_length))
        if self.lookup_delay:
            await asyncio.sleep(self.lookup_delay)
        if (host_index, cid) in self.errors:
            raise self.errors[(host_index, cid)]
        if (host_index, cid) in self.pinned:
            return list(self.pinned[(host_index, cid)])
        return [self._addr_info(id=self.ids[i], addrs=()) for i in self.providers.get(cid, [])]

    async def id(self, host_index: int) -> str:
        self._check(host_index)
        self.calls.append(("id", host_index))
        return self.ids[host_index]

    def set_lookup(self, host_index: int, cid, peer_ids: List[str]) -> None:
        self.pinned[(host_index, cid)] = [self._addr_info(id=p, addrs=()) for p in peer_ids]

    def fail_lookup(self, host_index: int, cid, error: Exception) -> None:
        self.errors[(host_index, cid)] = error


@pytest.fixture(scope="function")
def fake_api() -> Callable[[int], FakeFleetAPI]:
    """Factory for FakeFleetAPI with N hosts."""
    return FakeFleetAPI


# ============================================================================
# Async Utilities
# ============================================================================

@pytest.fixture(scope="function")
def wait_for():
    """Poll ``predicate`` until it is true or ``timeout`` expires."""
    async def _wait(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.02) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            await asyncio.sleep(interval)
        return predicate()
    return _wait


@pytest.fixture(scope="function")
def sample_cids():
    """Four deterministic test CIDs."""
    from harness.cids import generate_test_cids
    return generate_test_cids(4)
