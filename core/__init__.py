"""
Core Network Module
===================
Содержит сетевой слой узлов харнесса:
- Node: TCP точка узла с подписанным handshake и request/response
- Transport: подписи Ed25519 и кадрирование сообщений
- Peer: libp2p-совместимые Peer ID и адресные записи
- CID: кодек идентификаторов контента
- Identity: персистентные ключи узлов
- DHT: Kademlia с провайдерскими записями и prefix lookup
"""

from .errors import (
    HarnessError,
    ConfigError,
    KeyLoadError,
    NodeCreateError,
    BootstrapError,
    FailedToBootstrapError,
    ProvideError,
    ProviderLookupError,
    ShutdownError,
    IndexOutOfRangeError,
    RPCError,
)
from .peer import AddrInfo, make_addr, parse_tcp_addr, peer_id_from_public_key
from .transport import Message, MessageType, Crypto, SimpleTransport
from .cid import CID
from .identity import load_or_create_identity
from .node import Node, Peer, PeerManager
from .dht import KademliaDHT

__all__ = [
    "HarnessError",
    "ConfigError",
    "KeyLoadError",
    "NodeCreateError",
    "BootstrapError",
    "FailedToBootstrapError",
    "ProvideError",
    "ProviderLookupError",
    "ShutdownError",
    "IndexOutOfRangeError",
    "RPCError",
    "AddrInfo",
    "make_addr",
    "parse_tcp_addr",
    "peer_id_from_public_key",
    "Message",
    "MessageType",
    "Crypto",
    "SimpleTransport",
    "CID",
    "load_or_create_identity",
    "Node",
    "Peer",
    "PeerManager",
    "KademliaDHT",
]
