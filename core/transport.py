"""
Transport Layer - Подписанные сообщения и кадрирование
======================================================

[SECURITY] Этот модуль обеспечивает:
1. Цифровые подписи через Ed25519 (PyNaCl)
2. Идентичность узла = libp2p-совместимый Peer ID от публичного ключа
3. Кадрирование сообщений: 4 байта длины (big-endian) + JSON

[DECENTRALIZATION] Подпись проверяется по sender_id без центра
сертификации: публичный ключ восстанавливается из самого Peer ID.
"""

import base64
import json
import os
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Optional, Dict, Any

from nacl.signing import SigningKey, VerifyKey
from nacl.exceptions import BadSignatureError, CryptoError

from .peer import peer_id_from_public_key, public_key_from_peer_id


# Максимальный размер кадра (байты)
MAX_FRAME_SIZE = 4 * 1024 * 1024


class MessageType(Enum):
    """Типы сообщений между узлами."""

    PING = auto()   # Handshake: запрос
    PONG = auto()   # Handshake: ответ
    DATA = auto()   # DHT запросы и ответы


@dataclass
class Message:
    """
    Обертка для сообщений между узлами.

    [SECURITY] Каждое сообщение содержит:
    - type: тип сообщения
    - payload: полезная нагрузка
    - sender_id: Peer ID отправителя
    - timestamp: время создания
    - signature: подпись всех полей кроме самой подписи
    - nonce: случайное значение для уникальности и корреляции
    """

    type: MessageType
    payload: Dict[str, Any]
    sender_id: str
    timestamp: float = field(default_factory=time.time)
    signature: Optional[str] = None
    nonce: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.name,
            "payload": self.payload,
            "sender_id": self.sender_id,
            "timestamp": self.timestamp,
            "signature": self.signature,
            "nonce": self.nonce,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            type=MessageType[data["type"]],
            payload=data["payload"],
            sender_id=data["sender_id"],
            timestamp=data["timestamp"],
            signature=data.get("signature"),
            nonce=data.get("nonce"),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_json(cls, json_str: str) -> "Message":
        return cls.from_dict(json.loads(json_str))

    def get_signing_data(self) -> bytes:
        """
        Получить данные для подписи.

        [SECURITY] Подписываются все поля кроме самой подписи,
        сериализация детерминирована (sort_keys).
        """
        data = {
            "type": self.type.name,
            "payload": self.payload,
            "sender_id": self.sender_id,
            "timestamp": self.timestamp,
            "nonce": self.nonce,
        }
        return json.dumps(data, sort_keys=True, separators=(",", ":")).encode("utf-8")


def new_nonce() -> str:
    """Случайный nonce (16 байт, base64)."""
    return base64.b64encode(os.urandom(16)).decode("ascii")


class Crypto:
    """
    Криптографический модуль на базе PyNaCl.

    [SECURITY] Ed25519 для подписей (SigningKey/VerifyKey).
    Ключевая пара сохраняется как 32-байтный seed.

    [IDENTITY] node_id = Peer ID, выведенный из публичного ключа.
    """

    SEED_SIZE = 32

    def __init__(self, signing_key: Optional[SigningKey] = None):
        """
        Args:
            signing_key: Существующий ключ подписи или None для генерации нового
        """
        self.signing_key: SigningKey = signing_key or SigningKey.generate()
        self.verify_key: VerifyKey = self.signing_key.verify_key
        self.node_id: str = peer_id_from_public_key(bytes(self.verify_key))

    @classmethod
    def from_seed(cls, seed: bytes) -> "Crypto":
        """
        Создать криптомодуль из seed (32 байта).

        Raises:
            ValueError: seed неверной длины
        """
        if len(seed) != cls.SEED_SIZE:
            raise ValueError(f"Seed must be exactly {cls.SEED_SIZE} bytes, got {len(seed)}")
        return cls(SigningKey(seed))

    def export_identity(self) -> bytes:
        """Экспорт seed приватного ключа для сохранения."""
        return bytes(self.signing_key)

    def sign_message(self, message: Message) -> Message:
        """Подписать сообщение (nonce генерируется если отсутствует)."""
        if message.nonce is None:
            message.nonce = new_nonce()
        signed = self.signing_key.sign(message.get_signing_data())
        message.signature = base64.b64encode(signed.signature).decode("ascii")
        return message

    @staticmethod
    def verify_signature(message: Message) -> bool:
        """
        Проверить подпись сообщения.

        [SECURITY] True только если подпись валидна и соответствует
        публичному ключу, встроенному в sender_id.
        """
        if message.signature is None:
            return False
        try:
            verify_key = VerifyKey(public_key_from_peer_id(message.sender_id))
            signature = base64.b64decode(message.signature)
            verify_key.verify(message.get_signing_data(), signature)
            return True
        except (BadSignatureError, CryptoError, ValueError, TypeError):
            return False


class SimpleTransport:
    """
    Кадрирование сообщений поверх TCP.

    Формат: 4 байта длины (big-endian) + JSON payload
    """

    @staticmethod
    def pack(message: Message) -> bytes:
        payload = message.to_json().encode("utf-8")
        return len(payload).to_bytes(4, "big") + payload

    @staticmethod
    def unpack_length(header: bytes) -> int:
        """Получить длину сообщения из заголовка (4 байта)."""
        if len(header) < 4:
            raise ValueError("Header too short")
        length = int.from_bytes(header[:4], "big")
        if length > MAX_FRAME_SIZE:
            raise ValueError(f"Frame too large: {length} > {MAX_FRAME_SIZE}")
        return length

    @staticmethod
    def unpack(data: bytes) -> Message:
        return Message.from_json(data.decode("utf-8"))
