"""
Bootstrap Registry and Fleet Context
====================================

[FLEET] Реестр адресных записей всех узлов флота:
- Append-only: запись добавляется сразу после создания узла
- Снимок (snapshot) - неизменяемый tuple, безопасный для чтения
  параллельно с добавлением
- Не очищается во время прогона

[CONTEXT] FleetContext собирает всё разделяемое состояние прогона
(реестр, тестовые CID, директория ключей, источник случайности,
настройки) в один объект, который явно передаётся узлам.
"""

import random
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from config import Config, config as default_config
from core.cid import CID
from core.peer import AddrInfo


class BootstrapRegistry:
    """Упорядоченный append-only список адресных записей флота."""

    def __init__(self) -> None:
        self._records: List[AddrInfo] = []
        self._lock = threading.Lock()

    def append(self, info: AddrInfo) -> None:
        with self._lock:
            self._records.append(info)

    def snapshot(self) -> Tuple[AddrInfo, ...]:
        """Неизменяемая копия текущего содержимого."""
        with self._lock:
            return tuple(self._records)

    def clear(self) -> None:
        """Очистить реестр (только при завершении процесса)."""
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


@dataclass
class FleetSettings:
    """Параметры узлов флота, собранные из Config."""

    listen_host: str = "127.0.0.1"
    base_port: int = 6000
    connection_timeout: float = 5.0
    request_timeout: float = 5.0
    max_peers: int = 64
    max_bootstrap_peers: int = 10
    bootstrap_settle_delay: float = 1.0
    fleet_settle_delay: float = 0.3
    auto_test_min_interval: float = 3.0
    auto_test_jitter: float = 20.0
    dht_k: int = 20
    dht_alpha: int = 3
    provider_ttl: int = 86400
    storage_path: str = ":memory:"

    @classmethod
    def from_config(cls, cfg: Config) -> "FleetSettings":
        return cls(
            listen_host=cfg.network.listen_host,
            base_port=cfg.network.base_port,
            connection_timeout=cfg.network.connection_timeout,
            request_timeout=cfg.network.request_timeout,
            max_peers=cfg.network.max_peers,
            max_bootstrap_peers=cfg.harness.max_bootstrap_peers,
            bootstrap_settle_delay=cfg.harness.bootstrap_settle_delay,
            fleet_settle_delay=cfg.harness.fleet_settle_delay,
            auto_test_min_interval=cfg.harness.auto_test_min_interval,
            auto_test_jitter=cfg.harness.auto_test_jitter,
            dht_k=cfg.dht.k,
            dht_alpha=cfg.dht.alpha,
            provider_ttl=cfg.dht.provider_ttl,
            storage_path=cfg.dht.storage_path,
        )


@dataclass
class FleetContext:
    """Разделяемое состояние одного прогона харнесса."""

    registry: BootstrapRegistry = field(default_factory=BootstrapRegistry)
    test_cids: List[CID] = field(default_factory=list)
    key_dir: Optional[str] = None
    settings: FleetSettings = field(default_factory=FleetSettings)
    rng: random.Random = field(default_factory=random.Random)

    @classmethod
    def from_config(
        cls,
        cfg: Optional[Config] = None,
        test_cids: Optional[List[CID]] = None,
        seed: Optional[int] = None,
    ) -> "FleetContext":
        cfg = cfg or default_config
        return cls(
            test_cids=list(test_cids or []),
            key_dir=cfg.harness.key_dir,
            settings=FleetSettings.from_config(cfg),
            rng=random.Random(seed),
        )
