"""
Kademlia Protocol - RPC операции DHT
====================================

[KADEMLIA] Основные RPC операции:
- FIND_NODE: Найти k ближайших узлов к target_id
- ADD_PROVIDER: Объявить себя провайдером ключа
- GET_PROVIDERS: Получить провайдеров ключа (или префикса ключа)
  и k ближайших к нему узлов

[LOOKUP] Итеративный поиск:
- alpha = 3 параллельных запроса
- Продолжаем, пока среди k ближайших есть неопрошенные узлы
- Возвращаем k ближайших найденных узлов

[PREFIX] GET_PROVIDERS с prefix_length > 0 передаёт только первые
prefix_length бит ключа. Отвечающий узел возвращает все записи с этим
префиксом, сгруппированные по полному ключу; запрашивающий сам
выбирает группу своего ключа.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional, Set

from core.peer import AddrInfo
from .providers import ProviderStore, DEFAULT_TTL
from .routing import (
    RoutingTable, NodeInfo, K, ALPHA, ID_BITS,
    xor_distance, mask_key,
)

logger = logging.getLogger(__name__)


SendFunc = Callable[[NodeInfo, Dict], Awaitable[Dict]]


def _key_from_hex(value: str) -> bytes:
    key = bytes.fromhex(value)
    if len(key) != ID_BITS // 8:
        raise ValueError(f"key must be {ID_BITS // 8} bytes, got {len(key)}")
    return key


@dataclass
class FindNodeRequest:
    """Запрос FIND_NODE: k ближайших узлов к target_id."""

    target_id: bytes

    def to_dict(self) -> Dict:
        return {"type": "FIND_NODE", "target_id": self.target_id.hex()}

    @classmethod
    def from_dict(cls, data: Dict) -> "FindNodeRequest":
        return cls(target_id=_key_from_hex(data["target_id"]))


@dataclass
class FindNodeResponse:
    nodes: List[NodeInfo]

    def to_dict(self) -> Dict:
        return {
            "type": "FIND_NODE_RESPONSE",
            "nodes": [n.to_dict() for n in self.nodes],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "FindNodeResponse":
        return cls(nodes=[NodeInfo.from_dict(n) for n in data.get("nodes", [])])


@dataclass
class AddProviderRequest:
    """
    Запрос ADD_PROVIDER.

    [SECURITY] Принимается только если provider.id совпадает с
    проверенным Peer ID отправителя.
    """

    key: bytes
    provider: AddrInfo
    ttl: int = DEFAULT_TTL

    def to_dict(self) -> Dict:
        return {
            "type": "ADD_PROVIDER",
            "key": self.key.hex(),
            "provider": self.provider.to_dict(),
            "ttl": self.ttl,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "AddProviderRequest":
        return cls(
            key=_key_from_hex(data["key"]),
            provider=AddrInfo.from_dict(data["provider"]),
            ttl=int(data.get("ttl", DEFAULT_TTL)),
        )


@dataclass
class AddProviderResponse:
    success: bool
    error: str = ""

    def to_dict(self) -> Dict:
        return {"type": "ADD_PROVIDER_RESPONSE", "success": self.success, "error": self.error}

    @classmethod
    def from_dict(cls, data: Dict) -> "AddProviderResponse":
        return cls(success=bool(data.get("success", False)), error=data.get("error", ""))


@dataclass
class GetProvidersRequest:
    """
    Запрос GET_PROVIDERS.

    key - полный ключ (prefix_length = 0) или ключ, у которого
    оставлены только первые prefix_length бит.
    """

    key: bytes
    prefix_length: int = 0

    def to_dict(self) -> Dict:
        return {
            "type": "GET_PROVIDERS",
            "key": self.key.hex(),
            "prefix_length": self.prefix_length,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GetProvidersRequest":
        prefix_length = int(data.get("prefix_length", 0))
        if prefix_length < 0 or prefix_length > ID_BITS:
            raise ValueError(f"prefix_length out of range: {prefix_length}")
        return cls(key=_key_from_hex(data["key"]), prefix_length=prefix_length)


@dataclass
class GetProvidersResponse:
    providers: Dict[bytes, List[AddrInfo]] = field(default_factory=dict)
    nodes: List[NodeInfo] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {
            "type": "GET_PROVIDERS_RESPONSE",
            "providers": [
                {"key": key.hex(), "providers": [p.to_dict() for p in infos]}
                for key, infos in self.providers.items()
            ],
            "nodes": [n.to_dict() for n in self.nodes],
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "GetProvidersResponse":
        providers: Dict[bytes, List[AddrInfo]] = {}
        for group in data.get("providers", []):
            key = _key_from_hex(group["key"])
            providers[key] = [AddrInfo.from_dict(p) for p in group.get("providers", [])]
        nodes = [NodeInfo.from_dict(n) for n in data.get("nodes", [])]
        return cls(providers=providers, nodes=nodes)


@dataclass
class LookupOutcome:
    """Итог итеративного поиска провайдеров."""

    providers: List[AddrInfo] = field(default_factory=list)
    queried: int = 0
    failed: int = 0

    @property
    def all_failed(self) -> bool:
        return self.queried > 0 and self.failed == self.queried


class DHTProtocol:
    """
    Kademlia DHT Protocol - обработка и отправка RPC запросов.

    [KADEMLIA] Обрабатывает FIND_NODE, ADD_PROVIDER, GET_PROVIDERS.
    [LOOKUP] Итеративный поиск узлов и провайдеров.
    """

    def __init__(
        self,
        routing_table: RoutingTable,
        providers: ProviderStore,
        local_id: bytes,
        k: int = K,
        alpha: int = ALPHA,
    ):
        """
        Args:
            routing_table: Таблица маршрутизации
            providers: Локальное хранилище провайдеров
            local_id: Наш node_id (32 байта)
            k: Размер результата поиска
            alpha: Параллельность запросов
        """
        self.routing_table = routing_table
        self.providers = providers
        self.local_id = local_id
        self.k = k
        self.alpha = alpha

    # =========================================================================
    # Request Handlers
    # =========================================================================

    async def handle_find_node(self, request: FindNodeRequest, sender: NodeInfo) -> FindNodeResponse:
        closest = self.routing_table.find_closest(request.target_id, count=self.k, exclude=sender.node_id)
        logger.debug(
            f"[DHT] FIND_NODE: target={request.target_id.hex()[:16]}..., "
            f"returning {len(closest)} nodes"
        )
        return FindNodeResponse(nodes=closest)

    async def handle_add_provider(self, request: AddProviderRequest, sender: NodeInfo) -> AddProviderResponse:
        if request.provider.id != sender.peer_id:
            logger.warning(
                f"[DHT] ADD_PROVIDER from {sender.peer_id[:16]}... "
                f"for foreign peer {request.provider.id[:16]}..."
            )
            return AddProviderResponse(success=False, error="provider does not match sender")

        addrs = request.provider.addrs or sender.addr_info.addrs
        await self.providers.add_provider(
            request.key,
            AddrInfo(id=request.provider.id, addrs=addrs),
            ttl=request.ttl,
        )
        return AddProviderResponse(success=True)

    async def handle_get_providers(self, request: GetProvidersRequest, sender: NodeInfo) -> GetProvidersResponse:
        groups = await self.providers.get_providers_by_prefix(request.key, request.prefix_length)
        closest = self.routing_table.find_closest(request.key, count=self.k, exclude=sender.node_id)
        logger.debug(
            f"[DHT] GET_PROVIDERS: key={request.key.hex()[:16]}.../{request.prefix_length}, "
            f"{sum(len(v) for v in groups.values())} records, {len(closest)} nodes"
        )
        return GetProvidersResponse(providers=groups, nodes=closest)

    async def handle_message(self, payload: Dict, sender: NodeInfo) -> Dict:
        """
        Обработать входящее DHT сообщение.

        Args:
            payload: Словарь с данными запроса
            sender: Проверенный отправитель

        Returns:
            Словарь с ответом ({"type": "ERROR", ...} для неизвестных запросов)
        """
        self.routing_table.add_node(sender)

        msg_type = payload.get("type")
        try:
            if msg_type == "FIND_NODE":
                response = await self.handle_find_node(FindNodeRequest.from_dict(payload), sender)
            elif msg_type == "ADD_PROVIDER":
                response = await self.handle_add_provider(AddProviderRequest.from_dict(payload), sender)
            elif msg_type == "GET_PROVIDERS":
                response = await self.handle_get_providers(GetProvidersRequest.from_dict(payload), sender)
            else:
                return {"type": "ERROR", "error": f"unknown request type {msg_type!r}"}
        except (KeyError, ValueError, TypeError) as e:
            return {"type": "ERROR", "error": f"malformed {msg_type}: {e}"}
        return response.to_dict()

    # =========================================================================
    # Iterative Lookup
    # =========================================================================

    async def iterative_find_node(self, target_id: bytes, send_func: SendFunc) -> List[NodeInfo]:
        """
        Итеративный поиск k ближайших узлов к target_id.

        [KADEMLIA] Алгоритм:
        1. Начинаем с k ближайших известных узлов
        2. Параллельно опрашиваем до alpha неопрошенных
        3. Добавляем полученные узлы в кандидаты
        4. Повторяем, пока среди k ближайших есть неопрошенные

        Returns:
            Список k ближайших отвечавших или известных узлов
        """
        request = FindNodeRequest(target_id=target_id).to_dict()

        def parse(data: Dict) -> List[NodeInfo]:
            return FindNodeResponse.from_dict(data).nodes

        shortlist, _, _ = await self._iterate(target_id, request, parse, send_func)
        logger.debug(
            f"[DHT] iterative_find_node: target={target_id.hex()[:16]}..., "
            f"found {len(shortlist)} nodes"
        )
        return shortlist

    async def iterative_get_providers(
        self,
        key: bytes,
        prefix_length: int,
        send_func: SendFunc,
    ) -> LookupOutcome:
        """
        Итеративный поиск провайдеров ключа.

        Args:
            key: Полный ключ (32 байта)
            prefix_length: Сколько бит ключа раскрывать (0 - весь ключ)
            send_func: Отправка запроса узлу

        Returns:
            LookupOutcome с провайдерами полного ключа и счётчиками запросов
        """
        if prefix_length >= ID_BITS:
            prefix_length = 0
        target = mask_key(key, prefix_length)
        request = GetProvidersRequest(key=target, prefix_length=prefix_length).to_dict()

        found: Dict[str, AddrInfo] = {}
        for info in await self.providers.get_providers(key):
            found.setdefault(info.id, info)

        def parse(data: Dict) -> List[NodeInfo]:
            response = GetProvidersResponse.from_dict(data)
            for info in response.providers.get(key, []):
                found.setdefault(info.id, info)
            return response.nodes

        _, queried, failed = await self._iterate(target, request, parse, send_func)
        logger.debug(
            f"[DHT] iterative_get_providers: key={key.hex()[:16]}.../{prefix_length}, "
            f"{len(found)} providers, {queried} queried, {failed} failed"
        )
        return LookupOutcome(providers=list(found.values()), queried=queried, failed=failed)

    async def announce_provider(
        self,
        key: bytes,
        provider: AddrInfo,
        send_func: SendFunc,
        ttl: int = DEFAULT_TTL,
    ) -> LookupOutcome:
        """
        Сохранить запись локально и разослать ADD_PROVIDER k ближайшим.

        Returns:
            LookupOutcome: queried - число адресатов ADD_PROVIDER,
            failed - число отказов
        """
        await self.providers.add_provider(key, provider, ttl=ttl)

        closest = await self.iterative_find_node(key, send_func)
        if not closest:
            return LookupOutcome()

        request = AddProviderRequest(key=key, provider=provider, ttl=ttl).to_dict()
        responses = await asyncio.gather(
            *(self._send(node, request, send_func) for node in closest),
            return_exceptions=True,
        )

        failed = 0
        for response in responses:
            if not isinstance(response, dict) or not AddProviderResponse.from_dict(response).success:
                failed += 1

        logger.debug(
            f"[DHT] announce_provider: key={key.hex()[:16]}..., "
            f"stored on {len(closest) - failed}/{len(closest)} nodes"
        )
        return LookupOutcome(providers=[provider], queried=len(closest), failed=failed)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _iterate(
        self,
        target: bytes,
        request: Dict,
        parse: Callable[[Dict], List[NodeInfo]],
        send_func: SendFunc,
    ):
        shortlist = self.routing_table.find_closest(target, count=self.k)
        if not shortlist:
            logger.debug("[DHT] lookup: no nodes in routing table")
            return [], 0, 0

        queried: Set[bytes] = set()
        failed = 0

        while True:
            to_query = [n for n in shortlist if n.node_id not in queried][:self.alpha]
            if not to_query:
                break

            for node in to_query:
                queried.add(node.node_id)

            responses = await asyncio.gather(
                *(self._send(node, request, send_func) for node in to_query),
                return_exceptions=True,
            )

            for node, response in zip(to_query, responses):
                if not isinstance(response, dict):
                    failed += 1
                    continue
                try:
                    new_nodes = parse(response)
                except (KeyError, ValueError, TypeError) as e:
                    logger.debug(f"[DHT] Malformed response from {node.peer_id[:16]}...: {e}")
                    failed += 1
                    continue

                for new_node in new_nodes:
                    if new_node.node_id == self.local_id:
                        continue
                    self.routing_table.add_node(new_node)
                    if new_node not in shortlist:
                        shortlist.append(new_node)

            shortlist.sort(key=lambda n: xor_distance(target, n.node_id))
            shortlist = shortlist[:self.k]

        return shortlist, len(queried), failed

    async def _send(self, node: NodeInfo, request: Dict, send_func: SendFunc) -> Optional[Dict]:
        """Отправить запрос; None при ошибке транспорта или ответе ERROR."""
        try:
            response = await send_func(node, request)
        except Exception as e:
            logger.debug(f"[DHT] {request.get('type')} to {node.peer_id[:16]}... failed: {e}")
            node.mark_failed()
            return None

        if not isinstance(response, dict) or response.get("type") == "ERROR":
            error = response.get("error") if isinstance(response, dict) else response
            logger.debug(f"[DHT] {request.get('type')} rejected by {node.peer_id[:16]}...: {error}")
            node.mark_failed()
            return None

        node.touch()
        return response
