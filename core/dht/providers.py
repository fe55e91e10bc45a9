"""
Provider Store - Локальное хранилище провайдерских записей
=========================================================

[KADEMLIA] Запись провайдера: (ключ, Peer ID провайдера, адреса).
- SQLite через aiosqlite (по умолчанию :memory:)
- TTL для автоматического удаления
- Повторное объявление тем же провайдером обновляет запись

[PREFIX] Выборка по префиксу ключа - диапазонный запрос по BLOB:
ключи одинаковой длины сравниваются побайтно, поэтому все ключи с
общим префиксом лежат в [low, high].
"""

import asyncio
import json
import logging
import time
from typing import Dict, List, Optional

import aiosqlite

from core.peer import AddrInfo
from .routing import prefix_range

logger = logging.getLogger(__name__)


DEFAULT_TTL = 86400  # 24 часа


class ProviderStore:
    """
    Хранилище провайдеров с персистентностью в SQLite.

    [PERSISTENCE] Таблица providers:
    - key: BLOB (32 байта)
    - peer_id: TEXT
    - addrs: TEXT (JSON список multiaddr)
    - timestamp: REAL
    - ttl: INTEGER
    PRIMARY KEY (key, peer_id)
    """

    def __init__(self, db_path: str = ":memory:"):
        """
        Args:
            db_path: Путь к файлу базы данных
        """
        self.db_path = db_path
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return

        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row

        await self._db.execute("""
            CREATE TABLE IF NOT EXISTS providers (
                key BLOB NOT NULL,
                peer_id TEXT NOT NULL,
                addrs TEXT NOT NULL,
                timestamp REAL NOT NULL,
                ttl INTEGER NOT NULL,
                PRIMARY KEY (key, peer_id)
            )
        """)

        await self._db.execute("""
            CREATE INDEX IF NOT EXISTS idx_providers_expires
            ON providers(timestamp, ttl)
        """)

        await self._db.commit()
        self._initialized = True

        logger.debug(f"[PROVIDERS] Initialized: {self.db_path}")

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None
            self._initialized = False

    async def add_provider(self, key: bytes, provider: AddrInfo, ttl: int = DEFAULT_TTL) -> None:
        """
        Сохранить провайдера ключа.

        Raises:
            aiosqlite.Error: ошибка базы данных
        """
        async with self._lock:
            await self._db.execute(
                """
                INSERT OR REPLACE INTO providers (key, peer_id, addrs, timestamp, ttl)
                VALUES (?, ?, ?, ?, ?)
                """,
                (key, provider.id, json.dumps(list(provider.addrs)), time.time(), ttl),
            )
            await self._db.commit()

        logger.debug(f"[PROVIDERS] {provider.id[:16]}... provides {key.hex()[:16]}...")

    async def get_providers(self, key: bytes) -> List[AddrInfo]:
        """Провайдеры ключа (без истёкших)."""
        async with self._lock:
            cursor = await self._db.execute(
                """
                SELECT peer_id, addrs FROM providers
                WHERE key = ? AND timestamp + ttl > ?
                ORDER BY timestamp
                """,
                (key, time.time()),
            )
            rows = await cursor.fetchall()
        return [self._row_to_info(row) for row in rows]

    async def get_providers_by_prefix(self, key: bytes, prefix_length: int) -> Dict[bytes, List[AddrInfo]]:
        """
        Провайдеры всех ключей с общим префиксом, сгруппированные по ключу.

        Args:
            key: Ключ или уже замаскированный префикс (32 байта)
            prefix_length: Длина префикса в битах
        """
        low, high = prefix_range(key, prefix_length)
        async with self._lock:
            cursor = await self._db.execute(
                """
                SELECT key, peer_id, addrs FROM providers
                WHERE key >= ? AND key <= ? AND timestamp + ttl > ?
                ORDER BY key, timestamp
                """,
                (low, high, time.time()),
            )
            rows = await cursor.fetchall()

        grouped: Dict[bytes, List[AddrInfo]] = {}
        for row in rows:
            grouped.setdefault(bytes(row["key"]), []).append(self._row_to_info(row))
        return grouped

    async def cleanup(self) -> int:
        """
        Удалить истёкшие записи.

        Returns:
            Количество удалённых записей
        """
        async with self._lock:
            cursor = await self._db.execute(
                "DELETE FROM providers WHERE timestamp + ttl <= ?",
                (time.time(),),
            )
            await self._db.commit()
            deleted = cursor.rowcount

        if deleted > 0:
            logger.info(f"[PROVIDERS] Cleanup: removed {deleted} expired records")
        return deleted

    @staticmethod
    def _row_to_info(row: aiosqlite.Row) -> AddrInfo:
        return AddrInfo(id=row["peer_id"], addrs=tuple(json.loads(row["addrs"])))
