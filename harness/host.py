"""
Host - Узел флота
=================

[FLEET] Host объединяет:
- Идентичность (ключ, стабильный между запусками по индексу)
- Сетевую точку Node на порту base_port + index
- Kademlia DHT, использующую реестр флота как источник bootstrap-пиров
- Периодическую задачу авто-теста

[BOOTSTRAP] Машина состояний:
    IDLE -> CONNECTING -> BOOTSTRAPPED
                       -> FAILED (все попытки подключения неудачны)

[AUTO-TEST] Каждый тик (если включён авто-тест): выбрать случайный
тестовый CID, объявить себя провайдером, сразу выполнить lookup и
проверить, что узел видит себя среди провайдеров.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from core.cid import CID
from core.dht import KademliaDHT
from core.dht.routing import ID_BITS
from core.errors import (
    BootstrapError,
    ConfigError,
    FailedToBootstrapError,
    HarnessError,
    NodeCreateError,
    ProvideError,
    ShutdownError,
)
from core.identity import load_or_create_identity
from core.node import Node
from core.peer import AddrInfo
from core.transport import Crypto
from .periodic import PeriodicTask, pick_interval
from .registry import FleetContext

logger = logging.getLogger(__name__)


class BootstrapState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    BOOTSTRAPPED = "bootstrapped"
    FAILED = "failed"


@dataclass
class AutoTestStats:
    """Счётчики авто-теста узла."""

    ticks: int = 0
    provided: int = 0
    found_self: int = 0
    missed_self: int = 0
    errors: int = 0


def validate_prefix_length(prefix_length: int) -> int:
    """Длина префикса должна быть целым в [0, 256]."""
    if isinstance(prefix_length, bool) or not isinstance(prefix_length, int):
        raise ValueError(f"prefix length must be an integer, got {prefix_length!r}")
    if prefix_length < 0 or prefix_length > ID_BITS:
        raise ValueError(f"prefix length must be in [0, {ID_BITS}], got {prefix_length}")
    return prefix_length


class Host:
    """
    Узел флота.

    Создаётся через ``await Host.create(...)``; ``start`` выполняет
    bootstrap и запускает периодическую задачу, ``stop`` останавливает
    задачу и закрывает DHT и сетевую точку.
    """

    def __init__(
        self,
        index: int,
        crypto: Crypto,
        node: Node,
        dht: KademliaDHT,
        ctx: FleetContext,
        auto_test: bool = False,
        prefix_length: int = 0,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.index = index
        self.crypto = crypto
        self.node = node
        self.dht = dht
        self.ctx = ctx
        self.auto_test = auto_test
        self.prefix_length = validate_prefix_length(prefix_length)
        self._sleep = sleep or asyncio.sleep

        self._state = BootstrapState.IDLE
        self._task: Optional[PeriodicTask] = None
        self.stats = AutoTestStats()

    @classmethod
    async def create(
        cls,
        index: int,
        ctx: FleetContext,
        port: Optional[int] = None,
        auto_test: bool = False,
        prefix_length: int = 0,
    ) -> "Host":
        """
        Создать узел: загрузить ключ, открыть порт, поднять DHT.

        Raises:
            ConfigError: prefix_length вне [0, 256]
            KeyLoadError: ключ узла повреждён
            NodeCreateError: не удалось открыть порт или создать DHT
        """
        try:
            validate_prefix_length(prefix_length)
        except ValueError as e:
            raise ConfigError(str(e)) from e

        settings = ctx.settings
        crypto = load_or_create_identity(index, ctx.key_dir)
        if port is None:
            # base_port 0: каждый узел получает свободный порт от ОС
            port = settings.base_port + index if settings.base_port else 0

        node = Node(
            crypto,
            host=settings.listen_host,
            port=port,
            connection_timeout=settings.connection_timeout,
            request_timeout=settings.request_timeout,
            max_peers=settings.max_peers,
        )
        await node.start()

        dht = KademliaDHT(
            node,
            bootstrap_peers_func=ctx.registry.snapshot,
            storage_path=settings.storage_path,
            k=settings.dht_k,
            alpha=settings.dht_alpha,
            provider_ttl=settings.provider_ttl,
            request_timeout=settings.request_timeout,
        )
        try:
            await dht.start()
        except Exception as e:
            await node.stop()
            raise NodeCreateError(f"failed to create dht for node {index}: {e}") from e

        host = cls(index, crypto, node, dht, ctx, auto_test=auto_test, prefix_length=prefix_length)
        logger.info(f"[HOST] node {index} created: id={host.peer_id} port={node.port}")
        return host

    @property
    def peer_id(self) -> str:
        return self.node.node_id

    @property
    def addr_info(self) -> AddrInfo:
        return self.node.addr_info

    @property
    def bootstrap_state(self) -> BootstrapState:
        return self._state

    @property
    def periodic_task(self) -> Optional[PeriodicTask]:
        return self._task

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """
        Bootstrap и запуск периодической задачи.

        Raises:
            BootstrapError: узел не смог присоединиться к сети
        """
        await self.bootstrap()

        settings = self.ctx.settings
        interval = pick_interval(self.ctx.rng, settings.auto_test_min_interval, settings.auto_test_jitter)
        self._task = PeriodicTask(f"host-{self.index}", self._tick, interval, sleep=self._sleep)
        self._task.start()
        logger.debug(f"[HOST] node {self.index} periodic task every {interval:.1f}s")

    async def bootstrap(self) -> None:
        """
        Подключиться к узлам из реестра и прогреть DHT.

        [BOOTSTRAP] Правила:
        - Из снимка реестра исключается собственная запись
        - Подключаемся не более чем к max_bootstrap_peers записям,
          неудачная попытка не повторяется
        - FAILED только если все попытки неудачны и попытки были
        - Пустой реестр (или только мы сами) - сразу BOOTSTRAPPED

        Raises:
            FailedToBootstrapError: все подключения неудачны
            BootstrapError: DHT warm-up завершился ошибкой
        """
        self._state = BootstrapState.CONNECTING

        candidates = [p for p in self.ctx.registry.snapshot() if p.id != self.peer_id]
        candidates = candidates[:self.ctx.settings.max_bootstrap_peers]

        failed = 0
        for info in candidates:
            logger.debug(f"[HOST] node {self.index} bootstrapping to {info.id}")
            try:
                await self.node.connect(info)
            except (ConnectionError, OSError) as e:
                logger.debug(f"[HOST] node {self.index} failed to bootstrap to {info.id}: {e}")
                failed += 1

        if candidates and failed == len(candidates):
            self._state = BootstrapState.FAILED
            raise FailedToBootstrapError(attempted=len(candidates))

        self._state = BootstrapState.BOOTSTRAPPED

        await self._sleep(self.ctx.settings.bootstrap_settle_delay)
        logger.info(f"[HOST] {self.peer_id} peer count: {self.node.peer_manager.peer_count}")

        try:
            await self.dht.bootstrap()
        except BootstrapError:
            raise
        except Exception as e:
            raise BootstrapError(f"dht bootstrap of node {self.index} failed: {e}") from e

    async def stop(self) -> None:
        """
        Остановить узел: сначала периодическую задачу, затем DHT и Node.

        Raises:
            ShutdownError: закрытие DHT или Node завершилось ошибкой
        """
        if self._task is not None:
            await self._task.stop()
            self._task = None

        errors: List[Exception] = []
        for name, close in (("dht", self.dht.stop), ("node", self.node.stop)):
            try:
                await close()
            except Exception as e:
                logger.warning(f"[HOST] node {self.index} failed to close {name}: {e}")
                errors.append(e)

        if errors:
            raise ShutdownError(f"node {self.index}: {errors[0]}") from errors[0]
        logger.debug(f"[HOST] node {self.index} stopped")

    # =========================================================================
    # Provide / Lookup
    # =========================================================================

    async def provide(self, cids: Sequence[CID]) -> int:
        """
        Объявить узел провайдером каждого CID.

        Ошибки по отдельным CID логируются и пропускаются.

        Returns:
            Количество успешно объявленных CID
        """
        provided = 0
        for cid in cids:
            try:
                await self.dht.provide(cid)
            except ProvideError as e:
                logger.warning(f"[HOST] host {self.index} failed to provide cid: {e}")
                continue
            provided += 1
            logger.info(f"[HOST] host {self.index} provided cid {cid}")
        return provided

    async def lookup(self, cid: CID, prefix_length: Optional[int] = None) -> List[AddrInfo]:
        """
        Найти провайдеров CID.

        Args:
            cid: Искомый CID
            prefix_length: Длина префикса; None - значение узла по умолчанию

        Returns:
            Список провайдеров (пустой список - валидный результат)

        Raises:
            ValueError: prefix_length вне [0, 256]
            ProviderLookupError: ошибка транспорта или протокола
        """
        if prefix_length is None:
            prefix_length = self.prefix_length
        validate_prefix_length(prefix_length)

        providers = await self.dht.find_providers(cid, prefix_length)
        logger.info(
            f"[HOST] host {self.index} found providers for cid {cid}: "
            f"[{', '.join(str(p) for p in providers)}]"
        )
        return providers

    # =========================================================================
    # Auto-test
    # =========================================================================

    async def _tick(self) -> None:
        if not self.auto_test or not self.ctx.test_cids:
            return

        self.stats.ticks += 1
        cid = self.ctx.rng.choice(self.ctx.test_cids)
        try:
            self.stats.provided += await self.provide([cid])
            providers = await self.lookup(cid)
        except (HarnessError, ValueError):
            self.stats.errors += 1
            raise

        if any(p.id == self.peer_id for p in providers):
            self.stats.found_self += 1
        else:
            self.stats.missed_self += 1
            logger.warning(f"[HOST] host {self.index} did not find itself as provider of {cid}")
