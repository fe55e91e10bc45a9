"""
dht-testclient
==============

Внешний драйвер проверки запущенного харнесса:

1. Генерирует тестовые CID (те же, что у харнесса)
2. Назначает провайдеров через dht_provide
3. Проверяет lookup с каждого узла для каждого CID

Код выхода: 1 при неудачной проверке, 0 при успехе или по истечении
--duration.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from config import config
from core.dht.routing import ID_BITS
from core.errors import HarnessError
from core.logger import configure_logging
from .cids import generate_test_cids
from .client import RPCClient
from .verify import assign_providers, run_verification

logger = logging.getLogger("harness.testclient")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dht-testclient",
        description="Verify provide/lookup of a running dht-tester",
    )
    parser.add_argument(
        "--duration",
        type=float,
        default=config.harness.duration,
        help=f"Time budget for verification in seconds (default: {config.harness.duration:g})",
    )
    parser.add_argument(
        "--num-test-cids",
        type=int,
        default=config.harness.num_test_cids,
        help=f"Number of test CIDs to generate (default: {config.harness.num_test_cids})",
    )
    parser.add_argument(
        "--endpoint",
        default=config.rpc.endpoint,
        help=f"Endpoint of server (default: {config.rpc.endpoint})",
    )
    parser.add_argument(
        "--prefix-length",
        type=int,
        default=config.harness.prefix_length,
        help=f"Lookup key prefix length in bits, 0..{ID_BITS} (default: 0, full key)",
    )
    parser.add_argument(
        "--no-redundancy",
        action="store_true",
        help="Assign one provider per CID instead of two",
    )
    parser.add_argument(
        "--log",
        default="info",
        help="Log level: error|warn|info|debug (default: info)",
    )
    return parser


async def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        configure_logging(args.log)
    except HarnessError as e:
        parser.error(str(e))
    if not 0 <= args.prefix_length <= ID_BITS:
        parser.error(f"--prefix-length must be in [0, {ID_BITS}]")
    if args.num_test_cids < 0:
        parser.error("--num-test-cids must be non-negative")

    cids = generate_test_cids(args.num_test_cids)
    for i, cid in enumerate(cids):
        logger.info(f"[VERIFY] test CID {i}: {cid}")

    async with RPCClient(args.endpoint) as client:
        try:
            num_hosts = await client.num_hosts()
            assignment = await assign_providers(
                client, cids, num_hosts, redundancy=not args.no_redundancy,
            )
            result = await run_verification(
                client, assignment, num_hosts, args.prefix_length, args.duration,
            )
        except HarnessError as e:
            logger.error(f"[VERIFY] aborted: {e}")
            return 1

    if result.failure is not None:
        print(f"verification failed: {result.failure}", file=sys.stderr)
        return 1
    if result.timed_out:
        logger.info(f"[VERIFY] duration elapsed after {result.checked} lookups, no failures")
    else:
        logger.info(f"[VERIFY] all {len(assignment)} cids verified on {num_hosts} hosts")
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
