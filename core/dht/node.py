"""
Kademlia DHT - Обёртка над сетевым Node с DHT функциональностью
===============================================================

[KADEMLIA] KademliaDHT расширяет базовый Node:
- Интегрирует RoutingTable для маршрутизации
- Добавляет ProviderStore для провайдерских записей
- Реализует provide / find_providers API
- Фоновая задача: очистка истёкших записей

[INTEGRATION] Взаимодействие с базовым Node:
- Запросы и ответы идут через Node.request (nonce-корреляция)
- Входящие запросы приходят через Node.set_request_handler
- Подключившиеся пиры сразу попадают в routing table

[BOOTSTRAP] Источник bootstrap-пиров задаётся функцией, которая
вызывается при каждом bootstrap и возвращает актуальный список
адресных записей (например, снимок реестра флота).
"""

import asyncio
import logging
from contextlib import suppress
from typing import Callable, Dict, List, Optional, Sequence

import aiosqlite

from core.cid import CID
from core.errors import BootstrapError, ProvideError, ProviderLookupError
from core.node import Node, Peer
from core.peer import AddrInfo
from .providers import ProviderStore, DEFAULT_TTL
from .protocol import DHTProtocol
from .routing import RoutingTable, NodeInfo, K, ALPHA, peer_id_to_node_id

logger = logging.getLogger(__name__)


CLEANUP_INTERVAL = 300  # 5 минут - очистка истёкших записей

BootstrapPeersFunc = Callable[[], Sequence[AddrInfo]]


class KademliaDHT:
    """
    Kademlia DHT поверх сетевой точки узла.

    [USAGE]
    ```python
    dht = KademliaDHT(node, bootstrap_peers_func=registry.snapshot)
    await dht.start()
    await dht.bootstrap()
    await dht.provide(cid)
    providers = await dht.find_providers(cid, prefix_length=16)
    await dht.stop()
    ```
    """

    def __init__(
        self,
        node: Node,
        bootstrap_peers_func: Optional[BootstrapPeersFunc] = None,
        storage_path: str = ":memory:",
        k: int = K,
        alpha: int = ALPHA,
        provider_ttl: int = DEFAULT_TTL,
        request_timeout: Optional[float] = None,
    ):
        """
        Args:
            node: Сетевая точка узла
            bootstrap_peers_func: Источник bootstrap-пиров
            storage_path: Путь к базе провайдеров
            k: Размер k-bucket
            alpha: Параллельность запросов
            provider_ttl: Время жизни провайдерских записей
            request_timeout: Таймаут одного запроса
        """
        self.node = node
        self.bootstrap_peers_func = bootstrap_peers_func
        self.provider_ttl = provider_ttl
        self.request_timeout = request_timeout

        self.local_id = peer_id_to_node_id(node.node_id)
        self.routing_table = RoutingTable(self.local_id, k=k)
        self.providers = ProviderStore(storage_path)
        self.protocol = DHTProtocol(
            routing_table=self.routing_table,
            providers=self.providers,
            local_id=self.local_id,
            k=k,
            alpha=alpha,
        )

        self._tasks: List[asyncio.Task] = []
        self._running = False

    async def start(self) -> None:
        """Инициализировать хранилище и подписаться на события Node."""
        if self._running:
            return

        await self.providers.initialize()

        self.node.set_request_handler(self._handle_request)
        self.node.on_peer_connected(self._on_peer_connected)

        for peer in self.node.peer_manager.get_active_peers():
            self._add_peer_to_routing(peer)

        self._running = True
        self._tasks.append(asyncio.create_task(self._cleanup_loop()))

        logger.debug(f"[KADEMLIA] DHT started: {self.local_id.hex()[:16]}...")

    async def stop(self) -> None:
        """Остановить фоновые задачи и закрыть хранилище."""
        self._running = False

        for task in self._tasks:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        await self.providers.close()
        logger.debug("[KADEMLIA] DHT stopped")

    # =========================================================================
    # Routing
    # =========================================================================

    async def _on_peer_connected(self, peer: Peer) -> None:
        self._add_peer_to_routing(peer)

    def _add_peer_to_routing(self, peer: Peer) -> None:
        added, _ = self.routing_table.add_node(NodeInfo.from_peer(peer.node_id, peer.host, peer.port))
        if added:
            logger.debug(f"[KADEMLIA] Added peer to routing: {peer.node_id[:16]}...")

    async def _handle_request(self, payload: Dict, peer: Peer) -> Dict:
        sender = NodeInfo.from_peer(peer.node_id, peer.host, peer.port)
        return await self.protocol.handle_message(payload, sender)

    async def _send(self, node: NodeInfo, request: Dict) -> Dict:
        return await self.node.request(
            node.peer_id,
            node.host,
            node.port,
            request,
            timeout=self.request_timeout,
        )

    # =========================================================================
    # Bootstrap
    # =========================================================================

    async def bootstrap(self) -> int:
        """
        Warm-up routing table.

        [KADEMLIA] Bootstrap:
        1. Если таблица пуста - подключаемся к пирам из bootstrap_peers_func
        2. Выполняем FIND_NODE для своего ID

        Returns:
            Количество узлов в routing table

        Raises:
            BootstrapError: были кандидаты, но таблица осталась пустой
        """
        candidates: List[AddrInfo] = []
        if len(self.routing_table) == 0 and self.bootstrap_peers_func is not None:
            candidates = [p for p in self.bootstrap_peers_func() if p.id != self.node.node_id]
            for info in candidates:
                try:
                    await self.node.connect(info)
                except ConnectionError as e:
                    logger.debug(f"[KADEMLIA] Bootstrap {info.id[:16]}... failed: {e}")

        await self.protocol.iterative_find_node(self.local_id, self._send)

        if candidates and len(self.routing_table) == 0:
            raise BootstrapError("dht bootstrap: routing table is empty")

        logger.debug(f"[KADEMLIA] Bootstrap complete: {len(self.routing_table)} nodes in routing table")
        return len(self.routing_table)

    # =========================================================================
    # Public API
    # =========================================================================

    async def provide(self, cid: CID) -> int:
        """
        Объявить себя провайдером CID.

        Returns:
            Количество удалённых узлов, принявших запись

        Raises:
            ProvideError: были адресаты, но все отказали
        """
        key = cid.dht_key()
        try:
            outcome = await self.protocol.announce_provider(
                key,
                self.node.addr_info,
                self._send,
                ttl=self.provider_ttl,
            )
        except aiosqlite.Error as e:
            raise ProvideError(f"provide {cid}: local store failed: {e}") from e
        if outcome.all_failed:
            raise ProvideError(f"provide {cid}: all {outcome.queried} ADD_PROVIDER requests failed")
        return outcome.queried - outcome.failed

    async def find_providers(self, cid: CID, prefix_length: int = 0) -> List[AddrInfo]:
        """
        Найти провайдеров CID.

        Args:
            cid: Искомый CID
            prefix_length: Длина раскрываемого префикса ключа в битах

        Raises:
            ProviderLookupError: все запросы к сети завершились ошибкой
        """
        try:
            outcome = await self.protocol.iterative_get_providers(cid.dht_key(), prefix_length, self._send)
        except aiosqlite.Error as e:
            raise ProviderLookupError(f"lookup {cid}: local store failed: {e}") from e
        if outcome.all_failed and not outcome.providers:
            raise ProviderLookupError(
                f"lookup {cid}: all {outcome.queried} GET_PROVIDERS requests failed"
            )
        return outcome.providers

    # =========================================================================
    # Background Tasks
    # =========================================================================

    async def _cleanup_loop(self) -> None:
        """Фоновая задача: очистка истёкших провайдерских записей."""
        while self._running:
            try:
                await asyncio.sleep(CLEANUP_INTERVAL)
                await self.providers.cleanup()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"[KADEMLIA] Cleanup error: {e}")
