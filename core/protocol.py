"""
Protocol Layer - Handshake PING/PONG
====================================

[SECURITY] Соединение считается установленным только после handshake:

1. Инициатор отправляет PING:
   - nonce: случайное значение
   - addrs: адреса, на которых инициатор принимает соединения
   - signature: подпись всех полей

2. Принимающая сторона проверяет подпись и возраст PING и отвечает PONG:
   - original_nonce: nonce из PING
   - addrs: собственные адреса
   - signature: подпись ответа

3. Инициатор проверяет подпись PONG и совпадение nonce.

После handshake обе стороны знают проверенный Peer ID друг друга.
"""

import logging
import time
from typing import List, Optional

from .transport import Crypto, Message, MessageType, new_nonce

logger = logging.getLogger(__name__)


class HandshakeHandler:
    """Создание и проверка PING/PONG сообщений."""

    # Максимальный возраст PING сообщения (секунды)
    MAX_PING_AGE = 60.0

    @staticmethod
    def create_ping(crypto: Crypto, addrs: List[str]) -> Message:
        ping = Message(
            type=MessageType.PING,
            payload={"addrs": list(addrs)},
            sender_id=crypto.node_id,
            nonce=new_nonce(),
        )
        return crypto.sign_message(ping)

    @classmethod
    def handle_ping(cls, ping: Message, crypto: Crypto, addrs: List[str]) -> Optional[Message]:
        """
        Проверить PING и вернуть подписанный PONG.

        Returns:
            PONG или None если PING отклонён
        """
        if ping.type != MessageType.PING:
            logger.warning(f"[HANDSHAKE] Expected PING, got {ping.type.name}")
            return None

        if not crypto.verify_signature(ping):
            logger.warning(f"[HANDSHAKE] Invalid signature from {ping.sender_id[:16]}...")
            return None

        age = time.time() - ping.timestamp
        if age > cls.MAX_PING_AGE:
            logger.warning(f"[HANDSHAKE] PING too old ({age:.1f}s) from {ping.sender_id[:16]}...")
            return None

        pong = Message(
            type=MessageType.PONG,
            payload={
                "original_nonce": ping.nonce,
                "addrs": list(addrs),
            },
            sender_id=crypto.node_id,
        )
        return crypto.sign_message(pong)

    @staticmethod
    def verify_pong(ping: Message, pong: Message, crypto: Crypto) -> bool:
        """PONG валиден, если подписан и отвечает на наш nonce."""
        if pong.type != MessageType.PONG:
            return False
        if not crypto.verify_signature(pong):
            return False
        return pong.payload.get("original_nonce") == ping.nonce
