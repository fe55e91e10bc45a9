"""
DHT Tester Configuration
========================
Централизованная конфигурация для харнесса, узлов и RPC сервера.

Значения по умолчанию можно переопределить переменными окружения
(в том числе из .env файла, который загружает main.py) и флагами CLI.
"""

from dataclasses import dataclass, field
import os
import tempfile


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        return int(raw) if raw else default
    except ValueError:
        return default


@dataclass
class NetworkConfig:
    """Настройки сетевого слоя узлов."""

    # Адрес, на котором слушают все узлы флота
    listen_host: str = "127.0.0.1"

    # Порт первого узла; узел i слушает base_port + i
    base_port: int = field(default_factory=lambda: _env_int("DHT_TESTER_BASE_PORT", 6000))

    # Таймаут подключения и handshake (секунды)
    connection_timeout: float = 5.0

    # Таймаут одного DHT запроса (секунды)
    request_timeout: float = 5.0

    # Максимальное количество активных соединений на узел
    max_peers: int = 64


@dataclass
class DHTConfig:
    """Настройки Kademlia DHT."""

    # Размер k-bucket
    k: int = 20

    # Параллельность итеративного поиска
    alpha: int = 3

    # Время жизни записи провайдера (секунды)
    provider_ttl: int = 86400

    # Путь к базе провайдеров (":memory:" - без персистентности)
    storage_path: str = ":memory:"


@dataclass
class HarnessConfig:
    """Настройки харнесса и флота узлов."""

    # Количество узлов флота
    count: int = 10

    # Длительность работы харнесса (секунды)
    duration: float = 600.0

    # Количество тестовых CID
    num_test_cids: int = 20

    # Длина префикса для lookup (0 - полный ключ)
    prefix_length: int = 0

    # Директория ключей узлов (node-<index>.key)
    key_dir: str = field(
        default_factory=lambda: os.getenv("DHT_TESTER_KEY_DIR", "").strip() or tempfile.gettempdir()
    )

    # Максимум bootstrap-подключений на узел
    max_bootstrap_peers: int = 10

    # Пауза после успешного bootstrap перед DHT warm-up (секунды)
    bootstrap_settle_delay: float = 1.0

    # Пауза между созданием и запуском флота (секунды)
    fleet_settle_delay: float = 0.3

    # Период авто-теста: min_interval + uniform[0, jitter)
    auto_test_min_interval: float = 3.0
    auto_test_jitter: float = 20.0


@dataclass
class RPCConfig:
    """Настройки JSON-RPC сервера."""

    host: str = "127.0.0.1"
    port: int = field(default_factory=lambda: _env_int("DHT_TESTER_RPC_PORT", 9000))

    # Таймаут клиента (секунды)
    client_timeout: float = 60.0

    @property
    def endpoint(self) -> str:
        return f"http://{self.host}:{self.port}"


@dataclass
class Config:
    """Главный конфигурационный класс."""

    network: NetworkConfig = field(default_factory=NetworkConfig)
    dht: DHTConfig = field(default_factory=DHTConfig)
    harness: HarnessConfig = field(default_factory=HarnessConfig)
    rpc: RPCConfig = field(default_factory=RPCConfig)


# Глобальный экземпляр конфигурации
config = Config()
