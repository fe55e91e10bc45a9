"""Peer ID and address record tests."""

import pytest

from core.peer import (
    AddrInfo,
    make_addr,
    parse_tcp_addr,
    peer_id_from_public_key,
    peer_id_to_bytes,
    public_key_from_peer_id,
)


class TestPeerId:
    """Test libp2p-compatible peer ids."""

    def test_public_key_roundtrip(self, crypto):
        """Test the public key is recoverable from the peer id."""
        public_key = bytes(crypto.verify_key)
        peer_id = peer_id_from_public_key(public_key)

        assert peer_id == crypto.node_id
        assert public_key_from_peer_id(peer_id) == public_key

    def test_binary_form(self, crypto):
        """Test binary peer id is identity multihash of the protobuf key."""
        raw = peer_id_to_bytes(crypto.node_id)

        assert raw[:2] == bytes([0x00, 36])
        assert raw[2:6] == bytes([0x08, 0x01, 0x12, 0x20])
        assert len(raw) == 38

    def test_wrong_key_size(self):
        with pytest.raises(ValueError):
            peer_id_from_public_key(b"\x01" * 31)

    def test_non_ed25519_peer_id(self):
        """Test a sha256-style peer id does not yield a key."""
        with pytest.raises(ValueError):
            public_key_from_peer_id("QmYyQSo1c1Ym7orWxLYvCrM2EmxFTANf8wXmmE7DWjhx5N")

    def test_invalid_base58(self):
        with pytest.raises(ValueError):
            peer_id_to_bytes("0OIl")


class TestAddresses:
    """Test multiaddr helpers."""

    def test_make_and_parse(self):
        addr = make_addr("127.0.0.1", 6001)

        assert addr == "/ip4/127.0.0.1/tcp/6001"
        assert parse_tcp_addr(addr) == ("127.0.0.1", 6001)

    def test_parse_without_tcp(self):
        with pytest.raises(ValueError):
            parse_tcp_addr("/ip4/127.0.0.1/udp/6001")

    def test_parse_garbage(self):
        with pytest.raises(ValueError):
            parse_tcp_addr("not-an-address")


class TestAddrInfo:
    """Test AddrInfo records."""

    def test_to_dict(self, crypto):
        info = AddrInfo.from_parts(crypto.node_id, ["/ip4/127.0.0.1/tcp/6000"])

        assert info.to_dict() == {"id": crypto.node_id, "addrs": ["/ip4/127.0.0.1/tcp/6000"]}

    def test_from_libp2p_json(self, crypto):
        """Test capitalised libp2p field names are accepted."""
        info = AddrInfo.from_dict({"ID": crypto.node_id, "Addrs": ["/ip4/10.0.0.1/tcp/1"]})

        assert info.id == crypto.node_id
        assert info.addrs == ("/ip4/10.0.0.1/tcp/1",)

    def test_from_dict_requires_id(self):
        with pytest.raises(ValueError):
            AddrInfo.from_dict({"addrs": []})

    def test_tcp_addresses_skip_unknown(self, crypto):
        """Test undialable addresses are skipped, order preserved."""
        info = AddrInfo.from_parts(
            crypto.node_id,
            ["/ip4/127.0.0.1/udp/1", "/ip4/127.0.0.1/tcp/6002", "/ip4/127.0.0.2/tcp/6003"],
        )

        assert info.tcp_addresses() == (("127.0.0.1", 6002), ("127.0.0.2", 6003))

    def test_no_tcp_addresses(self, crypto):
        assert AddrInfo(id=crypto.node_id).tcp_addresses() == ()

    def test_hashable_and_frozen(self, crypto):
        info = AddrInfo.from_parts(crypto.node_id, [])
        assert {info, AddrInfo.from_parts(crypto.node_id, [])} == {info}
        with pytest.raises(AttributeError):
            info.id = "other"
