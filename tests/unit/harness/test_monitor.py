"""Resource sampler tests."""

import os

import pytest

from harness.monitor import ResourceSampler

pytestmark = pytest.mark.asyncio


class TestResourceSampler:
    """Test per-interval process samples."""

    async def test_sample_format(self, temp_dir):
        sampler = ResourceSampler(str(temp_dir / "ps.txt"))

        pid, threads, cpu, rss = sampler.sample().split()

        assert int(pid) == os.getpid()
        assert int(threads) >= 1
        assert float(cpu) >= 0.0
        assert int(rss) > 0

    async def test_writes_lines(self, temp_dir, wait_for):
        path = temp_dir / "ps.txt"
        sampler = ResourceSampler(str(path), interval=0.02)

        sampler.start()
        assert await wait_for(lambda: sampler.samples >= 2)
        await sampler.stop()

        lines = path.read_text().splitlines()
        assert len(lines) >= 2
        assert all(len(line.split()) == 4 for line in lines)

    async def test_stop_without_start(self, temp_dir):
        await ResourceSampler(str(temp_dir / "ps.txt")).stop()
