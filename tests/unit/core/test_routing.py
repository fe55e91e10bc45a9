"""
Kademlia Routing Tests
======================

[KADEMLIA] XOR metric, k-buckets and prefix masking.
"""

import pytest

from core.dht.routing import (
    ID_BYTES,
    KBucket,
    NodeInfo,
    RoutingTable,
    distance_to_bucket_index,
    mask_key,
    peer_id_to_node_id,
    prefix_range,
    xor_distance,
)
from core.transport import Crypto


def make_node(port: int = 7000) -> NodeInfo:
    return NodeInfo.from_peer(Crypto().node_id, "127.0.0.1", port)


class TestDistance:
    """Test XOR distance helpers."""

    def test_xor_distance(self):
        a = bytes(ID_BYTES)
        b = bytes(ID_BYTES - 1) + b"\x05"

        assert xor_distance(a, a) == 0
        assert xor_distance(a, b) == 5
        assert xor_distance(a, b) == xor_distance(b, a)

    def test_length_mismatch(self):
        with pytest.raises(ValueError):
            xor_distance(b"\x00", b"\x00\x00")

    def test_bucket_index(self):
        assert distance_to_bucket_index(0) == 0
        assert distance_to_bucket_index(1) == 0
        assert distance_to_bucket_index(2) == 1
        assert distance_to_bucket_index(1 << 255) == 255

    def test_node_id_from_peer_id(self, crypto):
        node_id = peer_id_to_node_id(crypto.node_id)
        assert len(node_id) == ID_BYTES
        assert node_id == peer_id_to_node_id(crypto.node_id)


class TestPrefix:
    """Test key prefix masking used by prefix lookups."""

    KEY = bytes([0b10110111]) + b"\xff" * (ID_BYTES - 1)

    def test_mask_keeps_leading_bits(self):
        masked = mask_key(self.KEY, 4)

        assert masked[0] == 0b10110000
        assert masked[1:] == bytes(ID_BYTES - 1)

    @pytest.mark.parametrize("length", [0, 256, 300])
    def test_full_key_lengths(self, length):
        """Test 0 and lengths >= key size mean the full key."""
        assert mask_key(self.KEY, length) == self.KEY

    def test_prefix_range(self):
        low, high = prefix_range(self.KEY, 8)

        assert low == bytes([0b10110111]) + bytes(ID_BYTES - 1)
        assert high == bytes([0b10110111]) + b"\xff" * (ID_BYTES - 1)

    def test_prefix_range_full_key(self):
        assert prefix_range(self.KEY, 0) == (self.KEY, self.KEY)


class TestKBucket:
    """Test k-bucket LRU behaviour."""

    def test_add_and_update(self):
        bucket = KBucket(k=2)
        node = make_node(1)

        assert bucket.add(node) == (True, None)
        moved = NodeInfo.from_peer(node.peer_id, "127.0.0.2", 2)
        assert bucket.add(moved) == (True, None)
        assert len(bucket) == 1
        assert node.node_id in bucket
        assert [n.port for n in bucket] == [2]

    def test_full_bucket_returns_head(self):
        bucket = KBucket(k=2)
        first, second, third = make_node(1), make_node(2), make_node(3)
        bucket.add(first)
        bucket.add(second)

        added, head = bucket.add(third)
        assert not added
        assert head == first
        assert third.node_id not in bucket


class TestRoutingTable:
    """Test routing table operations."""

    def test_rejects_bad_local_id(self):
        with pytest.raises(ValueError):
            RoutingTable(b"short")

    def test_ignores_self(self):
        local = make_node()
        table = RoutingTable(local.node_id)

        assert table.add_node(local) == (False, None)
        assert len(table) == 0

    def test_find_closest_sorted(self):
        table = RoutingTable(make_node().node_id)
        nodes = [make_node(7000 + i) for i in range(10)]
        for node in nodes:
            table.add_node(node)

        target = nodes[3].node_id
        closest = table.find_closest(target, count=4)

        assert closest[0] == nodes[3]
        distances = [xor_distance(target, n.node_id) for n in closest]
        assert distances == sorted(distances)
        assert len(closest) == 4

    def test_find_closest_exclude(self):
        table = RoutingTable(make_node().node_id)
        nodes = [make_node(7000 + i) for i in range(3)]
        for node in nodes:
            table.add_node(node)

        closest = table.find_closest(nodes[0].node_id, exclude=nodes[0].node_id)
        assert nodes[0] not in closest
        assert len(closest) == 2

    def test_node_info_dict_recomputes_id(self):
        node = make_node(7100)
        restored = NodeInfo.from_dict(node.to_dict())

        assert restored == node
        assert restored.addr_info.tcp_addresses() == (("127.0.0.1", 7100),)
