"""
Kademlia Routing Table
======================

[KADEMLIA] K-bucket таблица маршрутизации:
- XOR-метрика расстояния между node_id
- 256 k-buckets (node_id = SHA-256 от бинарного Peer ID)
- k = 20 узлов на bucket (стандарт Kademlia)
- LRU-порядок внутри bucket

[PREFIX] Вспомогательные функции для prefix lookup: ключ обрезается
до первых N бит, остальные биты обнуляются.
"""

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Optional, Dict, Tuple, Iterator

from core.peer import AddrInfo, make_addr, peer_id_to_bytes

logger = logging.getLogger(__name__)


# Константы Kademlia
K = 20  # Размер k-bucket
ALPHA = 3  # Параллельность запросов
ID_BITS = 256  # Битность идентификаторов (SHA-256)
ID_BYTES = ID_BITS // 8


def peer_id_to_node_id(peer_id: str) -> bytes:
    """Kademlia ID пира: SHA-256 от бинарного Peer ID."""
    return hashlib.sha256(peer_id_to_bytes(peer_id)).digest()


@dataclass
class NodeInfo:
    """
    Информация об узле в DHT.

    [KADEMLIA] Узел идентифицируется:
    - node_id: 256-битный идентификатор в keyspace
    - peer_id: Peer ID для проверки handshake
    - host/port: сетевой адрес
    """

    node_id: bytes
    peer_id: str
    host: str
    port: int
    last_seen: float = field(default_factory=time.time)
    failed_requests: int = 0

    @classmethod
    def from_peer(cls, peer_id: str, host: str, port: int) -> "NodeInfo":
        return cls(node_id=peer_id_to_node_id(peer_id), peer_id=peer_id, host=host, port=port)

    @property
    def addr_info(self) -> AddrInfo:
        return AddrInfo(id=self.peer_id, addrs=(make_addr(self.host, self.port),))

    def touch(self) -> None:
        self.last_seen = time.time()
        self.failed_requests = 0

    def mark_failed(self) -> None:
        self.failed_requests += 1

    def to_dict(self) -> Dict:
        return {
            "peer_id": self.peer_id,
            "host": self.host,
            "port": self.port,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "NodeInfo":
        """node_id всегда пересчитывается из Peer ID."""
        return cls.from_peer(data["peer_id"], data["host"], int(data["port"]))

    def __hash__(self) -> int:
        return hash(self.node_id)

    def __eq__(self, other) -> bool:
        if isinstance(other, NodeInfo):
            return self.node_id == other.node_id
        return False


def xor_distance(id1: bytes, id2: bytes) -> int:
    """
    Вычислить XOR-расстояние между двумя идентификаторами.

    Returns:
        XOR-расстояние как целое число (меньше - ближе)
    """
    if len(id1) != len(id2):
        raise ValueError(f"ID length mismatch: {len(id1)} vs {len(id2)}")
    return int.from_bytes(id1, "big") ^ int.from_bytes(id2, "big")


def distance_to_bucket_index(distance: int) -> int:
    """Индекс bucket = позиция старшего установленного бита расстояния."""
    if distance == 0:
        return 0
    return distance.bit_length() - 1


def mask_key(key: bytes, prefix_length: int) -> bytes:
    """
    Оставить первые prefix_length бит ключа, остальные обнулить.

    prefix_length = 0 или >= длины ключа в битах возвращает ключ целиком.
    """
    total_bits = len(key) * 8
    if prefix_length <= 0 or prefix_length >= total_bits:
        return key
    value = int.from_bytes(key, "big")
    mask = ((1 << prefix_length) - 1) << (total_bits - prefix_length)
    return (value & mask).to_bytes(len(key), "big")


def prefix_range(key: bytes, prefix_length: int) -> Tuple[bytes, bytes]:
    """Наименьший и наибольший ключ с тем же префиксом (включительно)."""
    total_bits = len(key) * 8
    low = mask_key(key, prefix_length)
    if prefix_length <= 0 or prefix_length >= total_bits:
        return low, low
    tail = (1 << (total_bits - prefix_length)) - 1
    high = (int.from_bytes(low, "big") | tail).to_bytes(len(key), "big")
    return low, high


class KBucket:
    """
    K-bucket для хранения узлов с определённым расстоянием.

    [KADEMLIA] Узлы упорядочены по времени последнего контакта (LRU),
    при переполнении новый узел не добавляется.
    """

    def __init__(self, k: int = K):
        self.k = k
        self._nodes: "OrderedDict[bytes, NodeInfo]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[NodeInfo]:
        with self._lock:
            return iter(list(self._nodes.values()))

    def __contains__(self, node_id: bytes) -> bool:
        return node_id in self._nodes

    @property
    def is_full(self) -> bool:
        return len(self._nodes) >= self.k

    def add(self, node: NodeInfo) -> Tuple[bool, Optional[NodeInfo]]:
        """
        Добавить узел в bucket.

        Returns:
            (True, None) - узел добавлен или обновлён
            (False, head) - bucket полон, head - кандидат на вытеснение
        """
        with self._lock:
            if node.node_id in self._nodes:
                existing = self._nodes[node.node_id]
                existing.host, existing.port = node.host, node.port
                existing.touch()
                self._nodes.move_to_end(node.node_id)
                return True, None

            if not self.is_full:
                self._nodes[node.node_id] = node
                return True, None

            head = next(iter(self._nodes.values()))
            return False, head


class RoutingTable:
    """
    Kademlia Routing Table.

    [KADEMLIA] Bucket i содержит узлы с расстоянием 2^i <= d < 2^(i+1).
    find_closest сортирует все известные узлы по XOR-расстоянию до цели.
    """

    def __init__(self, local_id: bytes, k: int = K):
        """
        Args:
            local_id: Наш node_id (32 байта)
            k: Размер k-bucket
        """
        if len(local_id) != ID_BYTES:
            raise ValueError(f"local_id must be {ID_BYTES} bytes, got {len(local_id)}")

        self.local_id = local_id
        self.k = k
        self.buckets: List[KBucket] = [KBucket(k) for _ in range(ID_BITS)]

        logger.debug(f"[DHT] RoutingTable initialized: local_id={local_id.hex()[:16]}...")

    def __len__(self) -> int:
        return sum(len(b) for b in self.buckets)

    def get_bucket(self, node_id: bytes) -> KBucket:
        index = distance_to_bucket_index(xor_distance(self.local_id, node_id))
        return self.buckets[index]

    def add_node(self, node: NodeInfo) -> Tuple[bool, Optional[NodeInfo]]:
        """Добавить узел (себя не добавляем)."""
        if node.node_id == self.local_id:
            return False, None
        return self.get_bucket(node.node_id).add(node)

    def find_closest(self, target_id: bytes, count: int = K, exclude: Optional[bytes] = None) -> List[NodeInfo]:
        """
        Найти count ближайших узлов к целевому ID.

        Args:
            target_id: Целевой идентификатор
            count: Количество узлов для возврата
            exclude: ID узла для исключения из результата

        Returns:
            Список ближайших узлов, отсортированный по расстоянию
        """
        all_nodes: List[Tuple[int, NodeInfo]] = []

        for bucket in self.buckets:
            for node in bucket:
                if exclude and node.node_id == exclude:
                    continue
                all_nodes.append((xor_distance(target_id, node.node_id), node))

        all_nodes.sort(key=lambda x: x[0])
        return [node for _, node in all_nodes[:count]]

