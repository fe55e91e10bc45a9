"""
Peer Identity - Идентификаторы пиров и адресные записи
======================================================

[IDENTITY] Peer ID совместим с libp2p:
- Публичный ключ Ed25519 кодируется protobuf-обёрткой (KeyType=Ed25519)
- Оборачивается identity-multihash (код 0x00, длина 36)
- Кодируется в base58btc, что даёт строки вида 12D3KooW...

[ADDRESSING] Адреса пиров - multiaddr строки /ip4/<host>/tcp/<port>.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Tuple

import base58
from multiaddr import Multiaddr


# protobuf PublicKey{Type: Ed25519, Data: <32 bytes>}
ED25519_KEY_PREFIX = bytes([0x08, 0x01, 0x12, 0x20])

# identity multihash, длина = len(prefix) + 32
IDENTITY_MULTIHASH_PREFIX = bytes([0x00, len(ED25519_KEY_PREFIX) + 32])


def peer_id_from_public_key(public_key: bytes) -> str:
    """
    Построить Peer ID из публичного ключа Ed25519.

    Args:
        public_key: 32 байта публичного ключа

    Returns:
        base58btc строка Peer ID
    """
    if len(public_key) != 32:
        raise ValueError(f"Ed25519 public key must be 32 bytes, got {len(public_key)}")
    raw = IDENTITY_MULTIHASH_PREFIX + ED25519_KEY_PREFIX + public_key
    return base58.b58encode(raw).decode("ascii")


def peer_id_to_bytes(peer_id: str) -> bytes:
    """Декодировать Peer ID в бинарный multihash."""
    try:
        return base58.b58decode(peer_id)
    except ValueError as e:
        raise ValueError(f"invalid peer id {peer_id!r}: {e}") from e


def public_key_from_peer_id(peer_id: str) -> bytes:
    """
    Извлечь публичный ключ Ed25519 из Peer ID.

    [SECURITY] Позволяет проверить подпись сообщения, зная только
    sender_id, без обращения к внешним реестрам.
    """
    raw = peer_id_to_bytes(peer_id)
    prefix = IDENTITY_MULTIHASH_PREFIX + ED25519_KEY_PREFIX
    if len(raw) != len(prefix) + 32 or not raw.startswith(prefix):
        raise ValueError(f"peer id {peer_id!r} does not embed an Ed25519 key")
    return raw[len(prefix):]


def make_addr(host: str, port: int) -> str:
    """Сформировать multiaddr строку для TCP адреса."""
    return str(Multiaddr(f"/ip4/{host}/tcp/{port}"))


def parse_tcp_addr(addr: str) -> Tuple[str, int]:
    """
    Разобрать multiaddr строку в (host, port).

    Raises:
        ValueError: адрес не содержит ip4 и tcp компонентов
    """
    try:
        maddr = Multiaddr(addr)
        host = maddr.value_for_protocol("ip4")
        port = maddr.value_for_protocol("tcp")
    except Exception as e:
        raise ValueError(f"unsupported multiaddr {addr!r}: {e}") from e
    if not host or not port:
        raise ValueError(f"unsupported multiaddr {addr!r}")
    return host, int(port)


@dataclass(frozen=True)
class AddrInfo:
    """
    Адресная запись пира: ID и список адресов.

    JSON-форма совпадает с libp2p peer.AddrInfo: {"ID": ..., "Addrs": [...]}
    при чтении, {"id": ..., "addrs": [...]} при записи.
    """

    id: str
    addrs: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "addrs": list(self.addrs)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AddrInfo":
        peer_id = data.get("id", data.get("ID"))
        if not isinstance(peer_id, str) or not peer_id:
            raise ValueError("address record without id")
        addrs = data.get("addrs", data.get("Addrs")) or []
        return cls(id=peer_id, addrs=tuple(str(a) for a in addrs))

    @classmethod
    def from_parts(cls, peer_id: str, addrs: Iterable[str]) -> "AddrInfo":
        return cls(id=peer_id, addrs=tuple(addrs))

    def tcp_addresses(self) -> Tuple[Tuple[str, int], ...]:
        """Все разбираемые TCP адреса записи; нераспознанные пропускаются."""
        result = []
        for addr in self.addrs:
            try:
                result.append(parse_tcp_addr(addr))
            except ValueError:
                continue
        return tuple(result)

    def __str__(self) -> str:
        return f"{{{self.id}: [{' '.join(self.addrs)}]}}"
