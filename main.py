#!/usr/bin/env python3
"""
DHT Tester - multi-node harness
===============================

[FLEET] Запускает N узлов Kademlia DHT в одном процессе:
- Узел i слушает base_port + i, ключ хранится в key_dir/node-<i>.key
- Узлы присоединяются к сети через реестр уже созданных узлов
- Тестовые CID объявляются узлами i mod N (отключается --no-seed)

[AUTO-TEST] С флагом --auto каждый узел периодически объявляет себя
провайдером случайного тестового CID и проверяет, что находит себя.

[RPC] Control-plane сервер (dht_numHosts / dht_provide / dht_lookup /
dht_id) позволяет внешнему драйверу (dht-testclient) проверить сеть.

Использование:
    dht-tester [--count N] [--duration SEC] [--auto] [--prefix-length P]

Примеры:
    # 10 узлов на 10 минут
    dht-tester

    # 20 узлов с авто-тестом и поиском по 16-битному префиксу
    dht-tester --count 20 --auto --prefix-length 16 --log debug

    # Внешняя проверка
    dht-testclient --num-test-cids 20 --duration 120
"""

import argparse
import asyncio
import logging
import signal
import sys
from contextlib import suppress
from typing import List, Optional

from dotenv import load_dotenv

from config import Config
from core.dht.routing import ID_BITS
from core.errors import HarnessError, ShutdownError
from core.logger import configure_logging
from harness.cids import generate_test_cids
from harness.fleet import build_fleet
from harness.monitor import ResourceSampler
from harness.registry import FleetContext
from harness.rpc import RPCServer

logger = logging.getLogger("dht-tester")


def build_parser(cfg: Config) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dht-tester",
        description="Test Kademlia DHT provide/lookup across many local nodes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start 10 nodes for 10 minutes
  dht-tester

  # Drive the running harness from another terminal
  dht-testclient --endpoint http://127.0.0.1:9000
""",
    )
    parser.add_argument(
        "--count",
        type=int,
        default=cfg.harness.count,
        help=f"Number of nodes to run (default: {cfg.harness.count})",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=cfg.harness.duration,
        help=f"Length of time to run in seconds (default: {cfg.harness.duration:g})",
    )
    parser.add_argument(
        "--auto",
        action="store_true",
        help="Periodically provide and look up test CIDs on every node",
    )
    parser.add_argument(
        "--prefix-length",
        type=int,
        default=cfg.harness.prefix_length,
        help=f"Lookup key prefix length in bits, 0..{ID_BITS} (default: 0, full key)",
    )
    parser.add_argument(
        "--num-test-cids",
        type=int,
        default=cfg.harness.num_test_cids,
        help=f"Number of test CIDs to generate (default: {cfg.harness.num_test_cids})",
    )
    parser.add_argument(
        "--log",
        default="info",
        help="Log level: error|warn|info|debug (default: info)",
    )
    parser.add_argument(
        "--base-port",
        type=int,
        default=cfg.network.base_port,
        help=f"Port of node 0; node i listens on base-port + i (default: {cfg.network.base_port})",
    )
    parser.add_argument(
        "--rpc-host",
        default=cfg.rpc.host,
        help=f"RPC server host (default: {cfg.rpc.host})",
    )
    parser.add_argument(
        "--rpc-port",
        type=int,
        default=cfg.rpc.port,
        help=f"RPC server port (default: {cfg.rpc.port})",
    )
    parser.add_argument(
        "--key-dir",
        default=cfg.harness.key_dir,
        help=f"Directory for node-<i>.key files (default: {cfg.harness.key_dir})",
    )
    parser.add_argument(
        "--no-seed",
        action="store_true",
        help="Do not provide test CIDs from node i mod N at startup",
    )
    parser.add_argument(
        "--ps-file",
        default=None,
        help="Append per-second process samples (pid threads cpu%% rss) to this file",
    )
    return parser


def apply_args(cfg: Config, args: argparse.Namespace) -> None:
    """Перенести флаги CLI в конфигурацию."""
    cfg.harness.count = args.count
    cfg.harness.duration = args.duration
    cfg.harness.prefix_length = args.prefix_length
    cfg.harness.num_test_cids = args.num_test_cids
    cfg.harness.key_dir = args.key_dir
    cfg.network.base_port = args.base_port
    cfg.rpc.host = args.rpc_host
    cfg.rpc.port = args.rpc_port


async def main(argv: Optional[List[str]] = None) -> None:
    """
    Главная функция - точка входа.
    """
    load_dotenv()
    # env overrides (including .env) are read when Config is built
    cfg = Config()

    parser = build_parser(cfg)
    args = parser.parse_args(argv)

    try:
        configure_logging(args.log)
    except HarnessError as e:
        parser.error(str(e))
    if not 0 <= args.prefix_length <= ID_BITS:
        parser.error(f"--prefix-length must be in [0, {ID_BITS}]")
    if args.count < 1:
        parser.error("--count must be at least 1")
    if args.num_test_cids < 0:
        parser.error("--num-test-cids must be non-negative")

    apply_args(cfg, args)

    sampler: Optional[ResourceSampler] = None
    if args.ps_file:
        sampler = ResourceSampler(args.ps_file)
        sampler.start()

    test_cids = generate_test_cids(cfg.harness.num_test_cids)
    for i, cid in enumerate(test_cids):
        logger.info(f"[MAIN] test CID {i}: {cid}")

    ctx = FleetContext.from_config(cfg, test_cids=test_cids)

    try:
        fleet = await build_fleet(
            ctx,
            cfg.harness.count,
            auto_test=args.auto,
            prefix_length=cfg.harness.prefix_length,
        )
    except HarnessError as e:
        logger.error(f"[MAIN] failed to start fleet: {e}")
        if sampler:
            await sampler.stop()
        sys.exit(1)

    if not args.no_seed:
        await fleet.seed_test_cids()

    server = RPCServer(fleet, cfg.rpc.host, cfg.rpc.port)

    # Graceful shutdown
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("[MAIN] Received shutdown signal")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, signal_handler)

    try:
        await server.start()
        logger.info(
            f"[MAIN] running {len(fleet)} nodes for {cfg.harness.duration:g}s. Press Ctrl+C to stop."
        )
        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(shutdown_event.wait(), timeout=cfg.harness.duration)
    finally:
        await server.stop()
        try:
            await fleet.stop()
        except ShutdownError as e:
            logger.error(f"[MAIN] {e}")
        ctx.registry.clear()
        if sampler:
            await sampler.stop()
        logger.info("[MAIN] Shutdown complete")


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
