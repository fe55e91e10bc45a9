"""
Kademlia DHT Module
===================

Реализация распределённой хеш-таблицы на основе Kademlia:
- RoutingTable: K-bucket таблица маршрутизации
- DHTProtocol: FIND_NODE, ADD_PROVIDER, GET_PROVIDERS операции
- ProviderStore: Локальное хранилище провайдерских записей
- KademliaDHT: Обёртка над сетевым Node с DHT функциональностью

[KADEMLIA] Ключевые принципы:
- XOR-метрика для измерения расстояния между узлами
- 256 k-buckets (по битам расстояния)
- Итеративный lookup с alpha параллельными запросами
- Prefix lookup: запрос раскрывает только начало ключа
"""

from .routing import (
    RoutingTable,
    KBucket,
    NodeInfo,
    xor_distance,
    mask_key,
    peer_id_to_node_id,
)

from .providers import ProviderStore

from .protocol import (
    DHTProtocol,
    LookupOutcome,
)

from .node import KademliaDHT

__all__ = [
    # Routing
    "RoutingTable",
    "KBucket",
    "NodeInfo",
    "xor_distance",
    "mask_key",
    "peer_id_to_node_id",
    # Storage
    "ProviderStore",
    # Protocol
    "DHTProtocol",
    "LookupOutcome",
    # Node
    "KademliaDHT",
]
