"""
Node - Сетевая точка узла
=========================

[DECENTRALIZATION] Каждый Node одновременно сервер и клиент:
- Принимает входящие TCP соединения
- Инициирует исходящие соединения к пирам
- Идентичность узла = Peer ID от его ключа Ed25519

[SECURITY] Все соединения проходят подписанный handshake (PING/PONG),
все DATA сообщения подписываются и проверяются.

[RPC] Поверх соединений реализован request/response: запрос несёт
nonce, ответ с тем же nonce завершает ожидающий Future.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Dict, List, Set, Callable, Awaitable, Any, Tuple
from contextlib import suppress

from .errors import NodeCreateError
from .peer import AddrInfo, make_addr, parse_tcp_addr
from .protocol import HandshakeHandler
from .transport import Message, MessageType, Crypto, SimpleTransport, new_nonce

logger = logging.getLogger(__name__)


RequestHandler = Callable[[Dict[str, Any], "Peer"], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class Peer:
    """
    Представление подключенного пира.

    host/port - адрес, на котором пир принимает соединения
    (для входящих соединений берётся из адресов, объявленных в PING).
    """

    node_id: str
    host: str
    port: int
    addrs: Tuple[str, ...] = ()
    reader: Optional[asyncio.StreamReader] = None
    writer: Optional[asyncio.StreamWriter] = None
    is_outbound: bool = False
    last_seen: float = field(default_factory=time.time)
    bytes_sent: int = 0
    bytes_received: int = 0
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_connected(self) -> bool:
        return self.writer is not None and not self.writer.is_closing()

    @property
    def addr_info(self) -> AddrInfo:
        return AddrInfo(id=self.node_id, addrs=self.addrs or (make_addr(self.host, self.port),))

    async def send(self, message: Message) -> bool:
        """Отправить подписанное сообщение пиру."""
        if not self.is_connected:
            return False

        data = SimpleTransport.pack(message)
        try:
            async with self._write_lock:
                self.writer.write(data)
                await self.writer.drain()
            self.bytes_sent += len(data)
            return True
        except (ConnectionError, OSError) as e:
            logger.warning(f"[PEER] Failed to send to {self.node_id[:16]}...: {e}")
            return False

    async def close(self) -> None:
        if self.writer:
            self.writer.close()
            with suppress(Exception):
                await self.writer.wait_closed()
            self.writer = None
            self.reader = None


class PeerManager:
    """
    Менеджер подключенных пиров (ключ - Peer ID).

    При повторном соединении с тем же пиром новое соединение заменяет
    старое в таблице; старое продолжает обслуживать свой read loop.
    """

    def __init__(self, max_peers: int = 64):
        self.max_peers = max_peers
        self._peers: Dict[str, Peer] = {}
        self._lock = asyncio.Lock()

    async def add_peer(self, peer: Peer) -> bool:
        """
        Добавить подключенного пира.

        Returns:
            True если пир добавлен, False если превышен лимит
        """
        async with self._lock:
            if peer.node_id not in self._peers and len(self._peers) >= self.max_peers:
                return False
            self._peers[peer.node_id] = peer
            logger.debug(f"[PEER] Added peer {peer.node_id[:16]}... ({peer.host}:{peer.port})")
            return True

    async def remove_peer(self, node_id: str, peer: Optional[Peer] = None) -> Optional[Peer]:
        """Удалить пира; если передан peer, удаляется только этот объект."""
        async with self._lock:
            current = self._peers.get(node_id)
            if current is None or (peer is not None and current is not peer):
                return None
            del self._peers[node_id]
        await current.close()
        logger.debug(f"[PEER] Removed peer {node_id[:16]}...")
        return current

    def get_peer(self, node_id: str) -> Optional[Peer]:
        peer = self._peers.get(node_id)
        if peer is not None and peer.is_connected:
            return peer
        return None

    def get_active_peers(self) -> List[Peer]:
        return [p for p in self._peers.values() if p.is_connected]

    @property
    def peer_count(self) -> int:
        return len(self.get_active_peers())


class Node:
    """
    Сетевая точка узла флота.

    [USAGE]
    ```python
    node = Node(crypto, host="127.0.0.1", port=6000)
    await node.start()
    peer = await node.connect(AddrInfo(id=..., addrs=("/ip4/127.0.0.1/tcp/6001",)))
    response = await node.request(peer.node_id, peer.host, peer.port, {"type": "FIND_NODE", ...})
    await node.stop()
    ```
    """

    def __init__(
        self,
        crypto: Crypto,
        host: str = "127.0.0.1",
        port: int = 6000,
        connection_timeout: float = 5.0,
        request_timeout: float = 5.0,
        max_peers: int = 64,
    ):
        """
        Args:
            crypto: Криптографический модуль с ключами узла
            host: Адрес для прослушивания
            port: Порт для прослушивания
            connection_timeout: Таймаут подключения и handshake
            request_timeout: Таймаут ожидания ответа на запрос
            max_peers: Максимум одновременных соединений
        """
        self.crypto = crypto
        self.host = host
        self.port = port
        self.connection_timeout = connection_timeout
        self.request_timeout = request_timeout

        self.peer_manager = PeerManager(max_peers=max_peers)

        self._server: Optional[asyncio.Server] = None
        self._running = False
        self._tasks: Set[asyncio.Task] = set()

        self._pending_requests: Dict[str, asyncio.Future] = {}
        self._request_handler: Optional[RequestHandler] = None
        self._on_peer_connected: List[Callable[[Peer], Awaitable[None]]] = []

    @property
    def node_id(self) -> str:
        """Peer ID узла."""
        return self.crypto.node_id

    @property
    def addrs(self) -> List[str]:
        return [make_addr(self.host, self.port)]

    @property
    def addr_info(self) -> AddrInfo:
        return AddrInfo.from_parts(self.node_id, self.addrs)

    async def start(self) -> None:
        """
        Запустить TCP сервер.

        Raises:
            NodeCreateError: порт занят или адрес недоступен
        """
        if self._running:
            return

        try:
            self._server = await asyncio.start_server(
                self._handle_connection,
                self.host,
                self.port,
                reuse_address=True,
            )
        except OSError as e:
            raise NodeCreateError(f"failed to listen on {self.host}:{self.port}: {e}") from e

        # port=0: объявляем реально выданный порт
        if self.port == 0 and self._server.sockets:
            self.port = self._server.sockets[0].getsockname()[1]

        self._running = True
        logger.info(f"[NODE] {self.node_id} listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        """
        Остановить узел: закрыть сервер, соединения и фоновые задачи.
        """
        if not self._running:
            return

        self._running = False

        if self._server:
            self._server.close()

        for peer in self.peer_manager.get_active_peers():
            await self.peer_manager.remove_peer(peer.node_id)

        tasks_to_cancel = list(self._tasks)
        for task in tasks_to_cancel:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

        for future in self._pending_requests.values():
            if not future.done():
                future.set_exception(ConnectionError("node stopped"))
        self._pending_requests.clear()

        if self._server:
            await self._server.wait_closed()
            self._server = None

        logger.debug(f"[NODE] {self.node_id[:16]}... stopped")

    # =========================================================================
    # Callbacks
    # =========================================================================

    def on_peer_connected(self, callback: Callable[[Peer], Awaitable[None]]) -> None:
        self._on_peer_connected.append(callback)

    def set_request_handler(self, handler: RequestHandler) -> None:
        """Установить обработчик входящих запросов (используется DHT)."""
        self._request_handler = handler

    # =========================================================================
    # Outbound connections
    # =========================================================================

    async def connect(self, info: AddrInfo) -> Peer:
        """
        Подключиться к пиру по адресной записи.

        Пробует адреса записи по очереди; Peer ID ответившего пира
        должен совпасть с info.id.

        Raises:
            ConnectionError: ни один адрес не дал успешного handshake
        """
        if info.id == self.node_id:
            raise ConnectionError("cannot connect to self")

        existing = self.peer_manager.get_peer(info.id)
        if existing:
            return existing

        addresses = info.tcp_addresses()
        if not addresses:
            raise ConnectionError(f"no dialable addresses for {info.id}")

        for host, port in addresses:
            peer = await self.connect_to_peer(host, port, expected_id=info.id)
            if peer:
                return peer

        raise ConnectionError(f"failed to dial {info.id} at {list(info.addrs)}")

    async def connect_to_peer(
        self,
        host: str,
        port: int,
        expected_id: Optional[str] = None,
    ) -> Optional[Peer]:
        """
        Подключиться к пиру и выполнить handshake.

        [SECURITY] Handshake:
        1. Отправляем PING со своими адресами
        2. Ожидаем PONG с подписью пира
        3. Проверяем подпись и nonce, при необходимости - ожидаемый Peer ID

        Returns:
            Peer или None при неудаче
        """
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.connection_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"[NODE] Connection to {host}:{port} failed: {e}")
            return None

        ping = HandshakeHandler.create_ping(self.crypto, self.addrs)

        try:
            writer.write(SimpleTransport.pack(ping))
            await writer.drain()

            pong = await asyncio.wait_for(
                self._read_frame(reader),
                timeout=self.connection_timeout,
            )

            if not HandshakeHandler.verify_pong(ping, pong, self.crypto):
                logger.warning(f"[NODE] Invalid PONG from {host}:{port}")
                await self._close_writer(writer)
                return None

            if expected_id and pong.sender_id != expected_id:
                logger.warning(
                    f"[NODE] Peer ID mismatch at {host}:{port}: "
                    f"expected {expected_id[:16]}..., got {pong.sender_id[:16]}..."
                )
                await self._close_writer(writer)
                return None

            peer = Peer(
                node_id=pong.sender_id,
                host=host,
                port=port,
                addrs=tuple(pong.payload.get("addrs") or ()),
                reader=reader,
                writer=writer,
                is_outbound=True,
            )
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, ValueError, KeyError) as e:
            logger.warning(f"[NODE] Handshake with {host}:{port} failed: {e}")
            await self._close_writer(writer)
            return None

        if not await self.peer_manager.add_peer(peer):
            await peer.close()
            return None

        self._spawn(self._read_loop(peer))
        await self._notify_connected(peer)

        logger.debug(f"[NODE] Connected to peer {peer.node_id[:16]}... at {host}:{port}")
        return peer

    # =========================================================================
    # Inbound connections
    # =========================================================================

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Обработать входящее соединение: PING -> PONG -> read loop."""
        peername = writer.get_extra_info("peername")
        logger.debug(f"[NODE] Incoming connection from {peername}")

        # stop() отменяет обработчики входящих соединений вместе с фоновыми задачами
        task = asyncio.current_task()
        if task is not None:
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        try:
            ping = await asyncio.wait_for(
                self._read_frame(reader),
                timeout=self.connection_timeout,
            )
            pong = HandshakeHandler.handle_ping(ping, self.crypto, self.addrs)
            if pong is None:
                await self._close_writer(writer)
                return

            writer.write(SimpleTransport.pack(pong))
            await writer.drain()
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, ValueError, KeyError) as e:
            logger.debug(f"[NODE] Inbound handshake from {peername} failed: {e}")
            await self._close_writer(writer)
            return

        addrs = tuple(ping.payload.get("addrs") or ())
        host = peername[0] if peername else "unknown"
        port = peername[1] if peername else 0
        for addr in addrs:
            try:
                host, port = parse_tcp_addr(addr)
                break
            except ValueError:
                continue

        peer = Peer(
            node_id=ping.sender_id,
            host=host,
            port=port,
            addrs=addrs,
            reader=reader,
            writer=writer,
            is_outbound=False,
        )

        if not await self.peer_manager.add_peer(peer):
            await peer.close()
            return

        await self._notify_connected(peer)
        await self._read_loop(peer)

    # =========================================================================
    # Request/response
    # =========================================================================

    async def request(
        self,
        peer_id: str,
        host: str,
        port: int,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Отправить запрос пиру и дождаться ответа.

        Подключается к пиру, если соединения ещё нет.

        Raises:
            ConnectionError: не удалось подключиться или отправить
            asyncio.TimeoutError: ответ не пришёл вовремя
        """
        peer = self.peer_manager.get_peer(peer_id)
        if peer is None:
            peer = await self.connect(AddrInfo(id=peer_id, addrs=(make_addr(host, port),)))

        nonce = new_nonce()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending_requests[nonce] = future

        message = self.crypto.sign_message(
            Message(
                type=MessageType.DATA,
                payload={"rpc": True, "request": payload, "nonce": nonce},
                sender_id=self.node_id,
            )
        )

        try:
            if not await peer.send(message):
                raise ConnectionError(f"failed to send request to {peer_id}")
            return await asyncio.wait_for(future, timeout=timeout or self.request_timeout)
        finally:
            self._pending_requests.pop(nonce, None)

    async def _handle_rpc_payload(self, peer: Peer, message: Message) -> None:
        """Обработать запрос или ответ, инкапсулированный в DATA."""
        payload = message.payload if isinstance(message.payload, dict) else {}
        if not payload.get("rpc"):
            logger.debug(f"[NODE] Ignoring non-RPC DATA from {peer.node_id[:16]}...")
            return

        if not self.crypto.verify_signature(message) or message.sender_id != peer.node_id:
            logger.warning(f"[NODE] Dropping unsigned payload from {peer.node_id[:16]}...")
            return

        nonce = payload.get("nonce")

        if "response" in payload and nonce:
            future = self._pending_requests.pop(nonce, None)
            if future and not future.done():
                future.set_result(payload["response"])
            return

        if "request" not in payload or self._request_handler is None:
            return

        try:
            response_payload = await self._request_handler(payload["request"], peer)
        except Exception as e:
            logger.warning(f"[NODE] Request handler error from {peer.node_id[:16]}...: {e}")
            response_payload = {"type": "ERROR", "error": str(e)}

        if response_payload is None:
            return

        response = self.crypto.sign_message(
            Message(
                type=MessageType.DATA,
                payload={"rpc": True, "response": response_payload, "nonce": nonce},
                sender_id=self.node_id,
            )
        )
        await peer.send(response)

    # =========================================================================
    # Internals
    # =========================================================================

    async def _read_loop(self, peer: Peer) -> None:
        """Цикл чтения сообщений от пира."""
        try:
            while self._running and peer.is_connected:
                message = await self._read_frame(peer.reader, peer)
                peer.last_seen = time.time()

                if message.type == MessageType.DATA:
                    await self._handle_rpc_payload(peer, message)
                else:
                    logger.debug(
                        f"[NODE] Unexpected {message.type.name} from {peer.node_id[:16]}..."
                    )
        except asyncio.IncompleteReadError:
            logger.debug(f"[NODE] Connection closed by peer {peer.node_id[:16]}...")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.debug(f"[NODE] Read error from {peer.node_id[:16]}...: {e}")
        finally:
            await self.peer_manager.remove_peer(peer.node_id, peer)
            await peer.close()

    @staticmethod
    async def _read_frame(reader: asyncio.StreamReader, peer: Optional[Peer] = None) -> Message:
        header = await reader.readexactly(4)
        length = SimpleTransport.unpack_length(header)
        payload = await reader.readexactly(length)
        if peer is not None:
            peer.bytes_received += len(header) + len(payload)
        return SimpleTransport.unpack(payload)

    async def _notify_connected(self, peer: Peer) -> None:
        for callback in self._on_peer_connected:
            try:
                await callback(peer)
            except Exception as e:
                logger.warning(f"[NODE] peer-connected callback failed: {e}")

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _close_writer(writer: asyncio.StreamWriter) -> None:
        writer.close()
        with suppress(Exception):
            await writer.wait_closed()
