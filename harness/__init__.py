"""
Harness Module
==============
Флот узлов в одном процессе и его control-plane:
- Registry: реестр bootstrap-записей и контекст прогона
- Host: узел флота с машиной состояний bootstrap и авто-тестом
- Fleet: создание, запуск и остановка N узлов
- RPC: JSON-RPC сервер и клиент
- Verify: назначение провайдеров и проверка lookup
"""

from .registry import BootstrapRegistry, FleetContext, FleetSettings
from .cids import generate_test_cids, make_test_cid
from .periodic import PeriodicTask, pick_interval
from .host import Host, BootstrapState, AutoTestStats, validate_prefix_length
from .fleet import Fleet, build_fleet
from .rpc import RPCServer, DHTService, JSONRPCError
from .client import RPCClient
from .verify import (
    ProviderAssignment,
    VerificationFailure,
    VerificationResult,
    assign_providers,
    verify_providers,
    run_verification,
)
from .monitor import ResourceSampler

__all__ = [
    "BootstrapRegistry",
    "FleetContext",
    "FleetSettings",
    "generate_test_cids",
    "make_test_cid",
    "PeriodicTask",
    "pick_interval",
    "Host",
    "BootstrapState",
    "AutoTestStats",
    "validate_prefix_length",
    "Fleet",
    "build_fleet",
    "RPCServer",
    "DHTService",
    "JSONRPCError",
    "RPCClient",
    "ProviderAssignment",
    "VerificationFailure",
    "VerificationResult",
    "assign_providers",
    "verify_providers",
    "run_verification",
    "ResourceSampler",
]
