"""
RPC Client
==========

[CLIENT] Асинхронный клиент control-plane сервера (aiohttp).

Предоставляет тот же API, что и Fleet (num_hosts / provide / lookup / id),
поэтому драйвер верификации работает с любым из них.
"""

import itertools
import logging
from typing import Any, Dict, List, Optional, Sequence

import aiohttp

from config import config
from core.cid import CID
from core.errors import RPCError
from core.peer import AddrInfo

logger = logging.getLogger(__name__)


# Код для ошибок HTTP/соединения, не пришедших от сервера
TRANSPORT_ERROR = -1


class RPCClient:
    """
    Клиент JSON-RPC.

    Example:
        async with RPCClient("http://127.0.0.1:9000") as client:
            n = await client.num_hosts()
    """

    def __init__(self, endpoint: Optional[str] = None, timeout: Optional[float] = None):
        self.endpoint = endpoint or config.rpc.endpoint
        self.timeout = timeout if timeout is not None else config.rpc.client_timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "RPCClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def call(self, method: str, params: Dict[str, Any]) -> Any:
        """
        Выполнить вызов и вернуть ``result``.

        Raises:
            RPCError: ответ содержит ``error`` или запрос не удался
        """
        logger.debug(f"[CLIENT] {method} -> {self.endpoint}")
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            async with self._get_session().post(self.endpoint, json=payload) as resp:
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, ValueError) as e:
            raise RPCError(TRANSPORT_ERROR, f"failed to post {method}: {e}") from e

        if not isinstance(body, dict):
            raise RPCError(TRANSPORT_ERROR, f"unexpected response to {method}: {body!r}")

        error = body.get("error")
        if error:
            raise RPCError(int(error.get("code", TRANSPORT_ERROR)), str(error.get("message", "")))
        return body.get("result")

    # =========================================================================
    # dht_* методы
    # =========================================================================

    async def num_hosts(self) -> int:
        result = await self.call("dht_numHosts", {})
        return int(result["numHosts"])

    async def provide(self, host_index: int, cids: Sequence[CID]) -> None:
        await self.call("dht_provide", {
            "hostIndex": host_index,
            "cids": [c.to_json() for c in cids],
        })

    async def lookup(self, host_index: int, cid: CID, prefix_length: int = 0) -> List[AddrInfo]:
        result = await self.call("dht_lookup", {
            "hostIndex": host_index,
            "cid": cid.to_json(),
            "prefixLength": prefix_length,
        })
        return [AddrInfo.from_dict(p) for p in (result or {}).get("providers") or []]

    async def id(self, host_index: int) -> str:
        result = await self.call("dht_id", {"hostIndex": host_index})
        return result["peerID"]
