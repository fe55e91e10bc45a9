"""
Control-Plane Server
====================

[RPC] JSON-RPC 2.0 поверх HTTP POST на ``/`` (aiohttp.web).

Методы:
    dht_numHosts  -> {"numHosts": int}
    dht_provide   {hostIndex, cids}              -> null
    dht_lookup    {hostIndex, cid, prefixLength} -> {"providers": [AddrInfo]}
    dht_id        {hostIndex}                    -> {"peerID": str}

[ERRORS] Коды ошибок:
    -32700  тело запроса не JSON
    -32600  некорректный запрос (в т.ч. batch)
    -32601  неизвестный метод
    -32602  некорректные параметры (тип, CID, prefixLength вне [0, 256])
    -32000  индекс узла вне [0, count)
    -32001  lookup завершился ошибкой транспорта
    -32603  прочие внутренние ошибки

[CORS] Любой origin; методы GET/HEAD/POST/PUT/OPTIONS; заголовки
content-type, username, password.

Сервер не изменяет флот: все методы только читают список узлов.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from aiohttp import web

from core.cid import CID
from core.dht.routing import ID_BITS
from core.errors import HarnessError, IndexOutOfRangeError, ProviderLookupError

logger = logging.getLogger(__name__)


PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
INDEX_OUT_OF_RANGE = -32000
LOOKUP_FAILED = -32001

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, HEAD, POST, PUT, OPTIONS",
    "Access-Control-Allow-Headers": "content-type, username, password",
}


class JSONRPCError(Exception):
    """Ошибка, превращаемая в объект ``error`` ответа."""

    def __init__(self, code: int, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


# ============================================================================
# Разбор параметров
# ============================================================================

def _params_object(params: Any) -> Dict[str, Any]:
    # некоторые клиенты шлют params как [ {...} ]
    if params is None:
        return {}
    if isinstance(params, list):
        if not params:
            return {}
        if len(params) == 1 and isinstance(params[0], dict):
            return params[0]
        raise JSONRPCError(INVALID_PARAMS, "params must be an object or a one-element list")
    if isinstance(params, dict):
        return params
    raise JSONRPCError(INVALID_PARAMS, "params must be an object")


def _host_index(params: Dict[str, Any]) -> int:
    value = params.get("hostIndex", 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise JSONRPCError(INVALID_PARAMS, f"hostIndex must be an integer, got {value!r}")
    return value


def _cid(value: Any) -> CID:
    try:
        return CID.from_json(value)
    except (ValueError, TypeError) as e:
        raise JSONRPCError(INVALID_PARAMS, f"invalid cid {value!r}: {e}")


def _prefix_length(params: Dict[str, Any]) -> int:
    value = params.get("prefixLength", 0)
    if isinstance(value, bool) or not isinstance(value, int):
        raise JSONRPCError(INVALID_PARAMS, f"prefixLength must be an integer, got {value!r}")
    if not 0 <= value <= ID_BITS:
        raise JSONRPCError(INVALID_PARAMS, f"prefixLength must be in [0, {ID_BITS}], got {value}")
    return value


# ============================================================================
# Сервис
# ============================================================================

class DHTService:
    """
    Методы ``dht_*`` над объектом с API флота
    (num_hosts / provide / lookup / id).
    """

    def __init__(self, api):
        self.api = api
        self.methods: Dict[str, Callable[[Dict[str, Any]], Awaitable[Any]]] = {
            "dht_numHosts": self.num_hosts,
            "dht_provide": self.provide,
            "dht_lookup": self.lookup,
            "dht_id": self.id,
        }

    async def call(self, method: str, params: Any) -> Any:
        handler = self.methods.get(method)
        if handler is None:
            raise JSONRPCError(METHOD_NOT_FOUND, f"method not found: {method}")

        params = _params_object(params)
        try:
            return await handler(params)
        except IndexOutOfRangeError as e:
            raise JSONRPCError(INDEX_OUT_OF_RANGE, str(e))
        except ProviderLookupError as e:
            raise JSONRPCError(LOOKUP_FAILED, str(e))
        except ValueError as e:
            raise JSONRPCError(INVALID_PARAMS, str(e))
        except JSONRPCError:
            raise
        except HarnessError as e:
            raise JSONRPCError(INTERNAL_ERROR, str(e))
        except Exception as e:
            logger.exception(f"[RPC] {method} failed unexpectedly")
            raise JSONRPCError(INTERNAL_ERROR, str(e))

    async def num_hosts(self, params: Dict[str, Any]) -> Dict[str, int]:
        return {"numHosts": await self.api.num_hosts()}

    async def provide(self, params: Dict[str, Any]) -> None:
        index = _host_index(params)
        raw = params.get("cids") or []
        if not isinstance(raw, list):
            raise JSONRPCError(INVALID_PARAMS, "cids must be a list")
        cids = [_cid(c) for c in raw]
        await self.api.provide(index, cids)
        return None

    async def lookup(self, params: Dict[str, Any]) -> Dict[str, Any]:
        index = _host_index(params)
        if "cid" not in params:
            raise JSONRPCError(INVALID_PARAMS, "missing cid")
        cid = _cid(params["cid"])
        prefix_length = _prefix_length(params)
        providers = await self.api.lookup(index, cid, prefix_length)
        return {"providers": [p.to_dict() for p in providers]}

    async def id(self, params: Dict[str, Any]) -> Dict[str, str]:
        return {"peerID": await self.api.id(_host_index(params))}


# ============================================================================
# HTTP сервер
# ============================================================================

@web.middleware
async def cors_middleware(request: web.Request, handler):
    if request.method == "OPTIONS":
        response = web.Response(status=200)
    else:
        response = await handler(request)
    response.headers.update(CORS_HEADERS)
    return response


def _response(request_id: Any, result: Any = None, error: Optional[JSONRPCError] = None) -> web.Response:
    body: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
    if error is not None:
        body["error"] = error.to_dict()
    else:
        body["result"] = result
    return web.json_response(body)


class RPCServer:
    """
    HTTP сервер control-plane.

    Example:
        server = RPCServer(fleet, "127.0.0.1", 9000)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(self, api, host: str = "127.0.0.1", port: int = 9000):
        self.service = DHTService(api)
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[cors_middleware])
        app.router.add_post("/", self._handle)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self.host, self.port)
        await self._site.start()

        # port=0: берём реально выданный порт
        if self._runner.addresses:
            self.port = self._runner.addresses[0][1]

        logger.info(f"[RPC] starting RPC server on {self.url}")

    async def stop(self) -> None:
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
            self._site = None
            logger.info("[RPC] server stopped")

    async def _handle(self, request: web.Request) -> web.Response:
        try:
            body = json.loads(await request.text())
        except ValueError:
            return _response(None, error=JSONRPCError(PARSE_ERROR, "parse error"))

        if not isinstance(body, dict):
            return _response(None, error=JSONRPCError(INVALID_REQUEST, "invalid request"))

        request_id = body.get("id")
        method = body.get("method")
        if not isinstance(method, str):
            return _response(request_id, error=JSONRPCError(INVALID_REQUEST, "missing method"))

        try:
            result = await self.service.call(method, body.get("params"))
        except JSONRPCError as e:
            logger.debug(f"[RPC] {method} failed: {e.code} {e.message}")
            return _response(request_id, error=e)

        return _response(request_id, result=result)
