"""
dht-tester-cli
==============

Управление запущенным харнессом через JSON-RPC.

Использование:
    dht-tester-cli provide --cids <cid>,<cid> --host-index 0
    dht-tester-cli lookup --cid <cid> --host-index 3 --prefix-length 16
    dht-tester-cli id --host-index 1
    dht-tester-cli num-hosts
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from config import config
from core.cid import CID
from core.dht.routing import ID_BITS
from core.errors import HarnessError
from core.logger import configure_logging
from .client import RPCClient

logger = logging.getLogger(__name__)


def parse_cid_list(text: str) -> List[CID]:
    """Comma-separated CIDs; undecodable entries are reported and skipped."""
    cids = []
    for item in text.split(","):
        item = item.strip()
        if not item:
            continue
        try:
            cids.append(CID.decode(item))
        except ValueError:
            print(f"failed to decode CID string: {item}")
    return cids


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dht-tester-cli",
        description="CLI for dht-tester",
    )
    parser.add_argument(
        "--log",
        default="warn",
        help="Log level: error|warn|info|debug (default: warn)",
    )

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--endpoint",
        default=config.rpc.endpoint,
        help=f"Endpoint of server (default: {config.rpc.endpoint})",
    )
    common.add_argument(
        "--host-index",
        type=int,
        default=0,
        help="Index of host which should provide/look up (default: 0)",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    provide = sub.add_parser("provide", aliases=["p"], parents=[common], help="provide CIDs")
    provide.add_argument("--cids", default="", help="Comma-separated list of CIDs to provide")
    provide.set_defaults(handler=cmd_provide)

    lookup = sub.add_parser("lookup", aliases=["l"], parents=[common], help="look up providers for a CID")
    lookup.add_argument("--cid", default="", help="CID to look up")
    lookup.add_argument(
        "--prefix-length",
        type=int,
        default=0,
        help=f"Lookup key prefix length in bits, 0..{ID_BITS} (default: 0, full key)",
    )
    lookup.set_defaults(handler=cmd_lookup)

    ident = sub.add_parser("id", parents=[common], help="print peer ID of a host")
    ident.set_defaults(handler=cmd_id)

    num_hosts = sub.add_parser("num-hosts", parents=[common], help="print number of hosts")
    num_hosts.set_defaults(handler=cmd_num_hosts)

    return parser


async def cmd_provide(client: RPCClient, args: argparse.Namespace) -> None:
    if not args.cids:
        raise HarnessError("must provide --cids")
    cids = parse_cid_list(args.cids)
    await client.provide(args.host_index, cids)
    print(f"host {args.host_index} provided {len(cids)} cids")


async def cmd_lookup(client: RPCClient, args: argparse.Namespace) -> None:
    if not args.cid:
        raise HarnessError("must provide --cid")
    try:
        target = CID.decode(args.cid)
    except ValueError as e:
        raise HarnessError(f"failed to decode CID string {args.cid}: {e}") from e

    providers = await client.lookup(args.host_index, target, args.prefix_length)
    print(f"found {len(providers)} providers for cid {target}")
    for i, prov in enumerate(providers):
        print(f"\tprovider {i}: {prov}")


async def cmd_id(client: RPCClient, args: argparse.Namespace) -> None:
    print(await client.id(args.host_index))


async def cmd_num_hosts(client: RPCClient, args: argparse.Namespace) -> None:
    print(await client.num_hosts())


async def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        configure_logging(args.log)
    except HarnessError as e:
        parser.error(str(e))

    if not 0 <= getattr(args, "prefix_length", 0) <= ID_BITS:
        parser.error(f"--prefix-length must be in [0, {ID_BITS}]")

    async with RPCClient(args.endpoint) as client:
        try:
            await args.handler(client, args)
        except HarnessError as e:
            print(f"error: {e}", file=sys.stderr)
            return 1
    return 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
