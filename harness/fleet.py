"""
Fleet Manager
=============

[FLEET] Поднимает N узлов в одном процессе:
1. Создаёт узлы по очереди; запись каждого сразу попадает в реестр
2. Ждёт fleet_settle_delay
3. Запускает узлы по очереди (bootstrap против реестра)

Ошибка создания или запуска останавливает уже созданные узлы и
пробрасывается: частично запущенный флот не остаётся работать.

[API] Fleet реализует тот же набор операций, что и RPC клиент
(num_hosts / provide / lookup / id), с проверкой индекса узла.
"""

import asyncio
import logging
from typing import List, Optional, Sequence

from core.cid import CID
from core.errors import ConfigError, IndexOutOfRangeError, ShutdownError
from core.peer import AddrInfo
from .host import Host, validate_prefix_length
from .registry import FleetContext

logger = logging.getLogger(__name__)


class Fleet:
    """Запущенный флот узлов."""

    def __init__(self, ctx: FleetContext, hosts: List[Host]):
        self.ctx = ctx
        self.hosts = hosts

    def __len__(self) -> int:
        return len(self.hosts)

    def host(self, index: int) -> Host:
        """
        Узел по индексу.

        Raises:
            IndexOutOfRangeError: индекс не целое в [0, len)
        """
        if isinstance(index, bool) or not isinstance(index, int) or not 0 <= index < len(self.hosts):
            raise IndexOutOfRangeError(index, len(self.hosts))
        return self.hosts[index]

    # =========================================================================
    # Control-plane API
    # =========================================================================

    async def num_hosts(self) -> int:
        return len(self.hosts)

    async def provide(self, host_index: int, cids: Sequence[CID]) -> None:
        await self.host(host_index).provide(cids)

    async def lookup(self, host_index: int, cid: CID, prefix_length: int = 0) -> List[AddrInfo]:
        return await self.host(host_index).lookup(cid, prefix_length)

    async def id(self, host_index: int) -> str:
        return self.host(host_index).peer_id

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def seed_test_cids(self, cids: Optional[Sequence[CID]] = None) -> int:
        """
        Узел i mod N объявляет себя провайдером i-го тестового CID.

        Returns:
            Количество успешно объявленных CID
        """
        cids = self.ctx.test_cids if cids is None else cids
        provided = 0
        for i, cid in enumerate(cids):
            provided += await self.hosts[i % len(self.hosts)].provide([cid])
        logger.info(f"[FLEET] seeded {provided}/{len(cids)} test cids")
        return provided

    async def stop(self) -> None:
        """
        Остановить все узлы (попытка для каждого).

        Raises:
            ShutdownError: хотя бы один узел не остановился
        """
        failures = []
        for host in self.hosts:
            try:
                await host.stop()
            except ShutdownError as e:
                failures.append((host.index, e))

        if failures:
            details = "; ".join(f"node {i}: {e}" for i, e in failures)
            raise ShutdownError(f"failed to stop {len(failures)} node(s): {details}")
        logger.info(f"[FLEET] stopped {len(self.hosts)} nodes")


async def build_fleet(
    ctx: FleetContext,
    count: int,
    auto_test: bool = False,
    prefix_length: int = 0,
) -> Fleet:
    """
    Создать и запустить флот из count узлов.

    Raises:
        ConfigError: count < 1 или prefix_length вне [0, 256]
        KeyLoadError, NodeCreateError, BootstrapError: из узлов
    """
    if count < 1:
        raise ConfigError(f"fleet needs at least one node, got {count}")
    try:
        validate_prefix_length(prefix_length)
    except ValueError as e:
        raise ConfigError(str(e)) from e

    hosts: List[Host] = []
    try:
        for index in range(count):
            host = await Host.create(index, ctx, auto_test=auto_test, prefix_length=prefix_length)
            hosts.append(host)
            ctx.registry.append(host.addr_info)

        await asyncio.sleep(ctx.settings.fleet_settle_delay)

        for host in hosts:
            await host.start()
    except BaseException:
        await _stop_quietly(hosts)
        raise

    logger.info(f"[FLEET] started {len(hosts)} nodes")
    return Fleet(ctx, hosts)


async def _stop_quietly(hosts: List[Host]) -> None:
    for host in hosts:
        try:
            await host.stop()
        except ShutdownError as e:
            logger.warning(f"[FLEET] cleanup of node {host.index} failed: {e}")
