"""
Node Integration Tests
======================

[INTEGRATION] Real localhost TCP: handshake, request/response and
KademliaDHT provide/lookup between a handful of nodes.
"""

import asyncio

import pytest

from core.cid import CID
from core.dht import KademliaDHT
from core.errors import ProviderLookupError
from core.peer import AddrInfo, make_addr

pytestmark = pytest.mark.asyncio


class TestHandshake:
    """Test connection establishment."""

    async def test_connect(self, node_factory, wait_for):
        a, b = await node_factory.create(2)

        peer = await a.connect(b.addr_info)

        assert peer.node_id == b.node_id
        assert a.peer_manager.get_peer(b.node_id) is peer
        assert await wait_for(lambda: b.peer_manager.get_peer(a.node_id) is not None)

    async def test_inbound_peer_uses_announced_port(self, node_factory, wait_for):
        """Test the accepting side records the dialer's listen port."""
        a, b = await node_factory.create(2)
        await a.connect(b.addr_info)

        assert await wait_for(lambda: b.peer_manager.get_peer(a.node_id) is not None)
        assert b.peer_manager.get_peer(a.node_id).port == a.port

    async def test_wrong_peer_id_rejected(self, node_factory, crypto):
        a, b = await node_factory.create(2)
        impostor = AddrInfo(id=crypto.node_id, addrs=b.addr_info.addrs)

        with pytest.raises(ConnectionError):
            await a.connect(impostor)

    async def test_unreachable(self, node_factory, crypto):
        a, b = await node_factory.create(2)
        port = b.port
        await b.stop()

        with pytest.raises(ConnectionError):
            await a.connect(AddrInfo(id=b.node_id, addrs=(make_addr("127.0.0.1", port),)))

    async def test_connect_to_self(self, node_factory):
        (a,) = await node_factory.create(1)
        with pytest.raises(ConnectionError):
            await a.connect(a.addr_info)


class TestRequests:
    """Test signed request/response over DATA frames."""

    async def test_request_response(self, node_factory):
        a, b = await node_factory.create(2)

        async def echo(payload, peer):
            return {"type": "ECHO", "from": peer.node_id, "value": payload["value"]}

        b.set_request_handler(echo)
        response = await a.request(b.node_id, "127.0.0.1", b.port, {"value": 7})

        assert response == {"type": "ECHO", "from": a.node_id, "value": 7}

    async def test_handler_error_becomes_error_response(self, node_factory):
        a, b = await node_factory.create(2)

        async def broken(payload, peer):
            raise RuntimeError("boom")

        b.set_request_handler(broken)
        response = await a.request(b.node_id, "127.0.0.1", b.port, {})

        assert response["type"] == "ERROR"
        assert "boom" in response["error"]

    async def test_no_handler_times_out(self, node_factory):
        a, b = await node_factory.create(2, request_timeout=0.3)

        with pytest.raises(asyncio.TimeoutError):
            await a.request(b.node_id, "127.0.0.1", b.port, {})

    async def test_concurrent_requests(self, node_factory):
        a, b = await node_factory.create(2)

        async def echo(payload, peer):
            return {"n": payload["n"]}

        b.set_request_handler(echo)
        results = await asyncio.gather(
            *(a.request(b.node_id, "127.0.0.1", b.port, {"n": i}) for i in range(20))
        )

        assert [r["n"] for r in results] == list(range(20))


class TestKademliaDHT:
    """Test KademliaDHT on real nodes."""

    async def _start_dhts(self, nodes):
        infos = [n.addr_info for n in nodes]
        dhts = []
        for node in nodes:
            dht = KademliaDHT(node, bootstrap_peers_func=lambda: infos, request_timeout=2.0)
            await dht.start()
            dhts.append(dht)
        return dhts

    async def test_provide_and_find(self, node_factory):
        nodes = await node_factory.create(4)
        dhts = await self._start_dhts(nodes)
        try:
            for dht in dhts:
                await dht.bootstrap()

            cid = CID.raw_sha256(b"integration")
            assert await dhts[0].provide(cid) >= 1

            for dht in dhts:
                providers = await dht.find_providers(cid)
                assert [p.id for p in providers] == [nodes[0].node_id]

            providers = await dhts[3].find_providers(cid, prefix_length=12)
            assert [p.id for p in providers] == [nodes[0].node_id]
        finally:
            for dht in dhts:
                await dht.stop()

    async def test_missing_cid_is_empty(self, node_factory):
        nodes = await node_factory.create(2)
        dhts = await self._start_dhts(nodes)
        try:
            await dhts[1].bootstrap()
            assert await dhts[1].find_providers(CID.raw_sha256(b"nobody")) == []
        finally:
            for dht in dhts:
                await dht.stop()

    async def test_lookup_fails_when_network_gone(self, node_factory):
        nodes = await node_factory.create(2)
        dhts = await self._start_dhts(nodes)
        try:
            await dhts[0].bootstrap()
            await dhts[1].stop()
            await nodes[1].stop()

            with pytest.raises(ProviderLookupError):
                await dhts[0].find_providers(CID.raw_sha256(b"gone"))
        finally:
            await dhts[0].stop()
