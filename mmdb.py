# Copyright (c) 2022 Pieter Wuille
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

"""
This module provides the DatabaseMetadata and MMDBTree classes.
"""

from __future__ import annotations
import io
import ipaddress
import struct
import unittest
from enum import Enum
from typing import Any, BinaryIO, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union

import maxminddb

from errors import CapacityError, InsertionError

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

METADATA_START_MARKER = b"\xab\xcd\xefMaxMind.com"
DATA_SECTION_SEPARATOR = bytes(16)

# Ranges that a tree built with include_reserved_networks=False keeps unassigned.
RESERVED_NETWORKS = [ipaddress.ip_network(net) for net in [
    "0.0.0.0/8",
    "10.0.0.0/8",
    "100.64.0.0/10",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.0.0.0/29",
    "192.0.2.0/24",
    "192.88.99.0/24",
    "192.168.0.0/16",
    "198.18.0.0/15",
    "198.51.100.0/24",
    "203.0.113.0/24",
    "224.0.0.0/4",
    "240.0.0.0/4",
    "100::/64",
    "2001::/23",
    "2001:db8::/32",
    "fc00::/7",
    "fe80::/10",
    "ff00::/8",
]]

# IPv6 ranges that a tree built with ipv4_aliasing=True points at the IPv4 subtree.
IPV4_ALIASES = [ipaddress.ip_network(net) for net in [
    "::ffff:0:0/96",
    "2002::/16",
]]

# Leaf marker for a reserved subnet. Encoded as an empty record.
_RESERVED = object()


class Uint16(int):
    """An integer stored as uint16 in the data section."""


class Uint32(int):
    """An integer stored as uint32 in the data section."""


class Uint64(int):
    """An integer stored as uint64 in the data section."""


class Uint128(int):
    """An integer stored as uint128 in the data section."""


class _DataType(Enum):
    """Type numbers of the MaxMind DB data section."""
    STRING = 2
    DOUBLE = 3
    BYTES = 4
    UINT16 = 5
    UINT32 = 6
    MAP = 7
    INT32 = 8
    UINT64 = 9
    UINT128 = 10
    ARRAY = 11
    BOOLEAN = 14


def _control(dtype: _DataType, size: int) -> bytes:
    """
    Encode the control byte(s) for a value of type dtype and the given size.

    Types above 7 are "extended": the control byte carries type 0, and the
    following byte holds (type - 7). Sizes of 29 and above spill into 1, 2 or
    3 extra bytes after that.
    """
    if dtype.value <= 7:
        first, ext = dtype.value << 5, b""
    else:
        first, ext = 0, bytes([dtype.value - 7])
    if size < 29:
        return bytes([first | size]) + ext
    if size < 285:
        return bytes([first | 29]) + ext + bytes([size - 29])
    if size < 65821:
        return bytes([first | 30]) + ext + (size - 285).to_bytes(2, 'big')
    if size < 65821 + (1 << 24):
        return bytes([first | 31]) + ext + (size - 65821).to_bytes(3, 'big')
    raise ValueError("value of size %i is too large for the data section" % size)


def _encode_uint(dtype: _DataType, val: int, nbytes: int) -> bytes:
    if not 0 <= val < (1 << (8 * nbytes)):
        raise ValueError("%i does not fit in %s" % (val, dtype.name.lower()))
    payload = val.to_bytes((val.bit_length() + 7) // 8, 'big')
    return _control(dtype, len(payload)) + payload


def encode_value(value: Any) -> bytes:
    """
    Encode a Python value in the MaxMind DB data section format.

    Plain ints become uint32, uint64 or uint128 depending on their magnitude,
    or int32 when negative; use Uint16/Uint32/Uint64/Uint128 to force a type.
    Map keys are written in sorted order so the encoding is deterministic.
    """
    if isinstance(value, str):
        payload = value.encode('utf-8')
        return _control(_DataType.STRING, len(payload)) + payload
    if isinstance(value, bool):
        return _control(_DataType.BOOLEAN, int(value))
    if isinstance(value, Uint16):
        return _encode_uint(_DataType.UINT16, value, 2)
    if isinstance(value, Uint32):
        return _encode_uint(_DataType.UINT32, value, 4)
    if isinstance(value, Uint64):
        return _encode_uint(_DataType.UINT64, value, 8)
    if isinstance(value, Uint128):
        return _encode_uint(_DataType.UINT128, value, 16)
    if isinstance(value, int):
        if value < 0:
            if value < -(1 << 31):
                raise ValueError("%i does not fit in int32" % value)
            return _control(_DataType.INT32, 4) + struct.pack('>i', value)
        if value < (1 << 32):
            return _encode_uint(_DataType.UINT32, value, 4)
        if value < (1 << 64):
            return _encode_uint(_DataType.UINT64, value, 8)
        return _encode_uint(_DataType.UINT128, value, 16)
    if isinstance(value, float):
        return _control(_DataType.DOUBLE, 8) + struct.pack('>d', value)
    if isinstance(value, (bytes, bytearray)):
        return _control(_DataType.BYTES, len(value)) + bytes(value)
    if isinstance(value, dict):
        ret = [_control(_DataType.MAP, len(value))]
        for key in sorted(value):
            if not isinstance(key, str):
                raise TypeError("map key %r is not a string" % (key,))
            ret.append(encode_value(key))
            ret.append(encode_value(value[key]))
        return b"".join(ret)
    if isinstance(value, (list, tuple)):
        return _control(_DataType.ARRAY, len(value)) + b"".join(encode_value(v) for v in value)
    raise TypeError("cannot encode %r in the data section" % (value,))


def open_reader(data: bytes, name: str = "<memory>") -> maxminddb.reader.Reader:
    """Open an in-memory MaxMind DB file with the pure Python maxminddb reader."""
    stream = io.BytesIO(data)
    stream.name = name
    return maxminddb.open_database(stream, maxminddb.MODE_FD)


class DatabaseMetadata(NamedTuple):
    """
    The metadata section of a MaxMind DB file.

    languages is written sorted and deduplicated. record_size is the number of
    bits per search tree record (24, 28 or 32) and bounds how large the tree
    and data section can grow.
    """
    database_type: str
    languages: Tuple[str, ...] = ()
    ip_version: int = 6
    record_size: int = 28
    build_epoch: int = 0
    description: Optional[Dict[str, str]] = None


class MMDBTree:
    """
    A class whose objects represent a MaxMind DB file under construction.

    Internally the mapping is stored as a binary trie keyed by address bits,
    with nodes represented as bare lists:
    - [] means an unassigned subnet.
    - [value] means a subnet mapped entirely to value.
    - [node,node] means a subnet whose lower half and upper half have different
    -             mappings, represented by new trie nodes.

    Inserting a network replaces whatever the covered range held before,
    including more specific networks inserted earlier. IPv4 networks in an
    IPv6 tree are stored at ::a.b.c.d only. By default no alias is created at
    ::ffff:0:0/96 or 2002::/16; with ipv4_aliasing, both ranges are pointed at
    the IPv4 subtree when the file is written, replacing what they held.
    """

    def __init__(self, metadata: DatabaseMetadata, include_reserved_networks: bool = True,
                 ipv4_aliasing: bool = False) -> None:
        """Construct an empty tree. Reserved ranges stay unassigned unless included."""
        if metadata.ip_version not in (4, 6):
            raise ValueError("unsupported IP version %i" % metadata.ip_version)
        if metadata.record_size not in (24, 28, 32):
            raise ValueError("unsupported record size %i" % metadata.record_size)
        self.metadata = metadata
        self.ipv4_aliasing = ipv4_aliasing
        self._bits = 128 if metadata.ip_version == 6 else 32
        self._trie: List = []
        if not include_reserved_networks:
            for net in RESERVED_NETWORKS:
                if net.version == 6 and self._bits == 32:
                    continue
                prefix_len, prefix = self._net_to_prefix(net)
                node = self._descend(net, prefix_len, prefix)
                node.clear()
                node.append(_RESERVED)

    def _net_to_prefix(self, net: Network) -> Tuple[int, int]:
        """Convert a network to (prefix_len, prefix) within this tree's address space."""
        if net.version == 6 and self._bits == 32:
            raise InsertionError("cannot insert IPv6 network %s into an IPv4 database" % net)
        prefix_len = net.prefixlen
        prefix = int(net.network_address) >> (net.max_prefixlen - net.prefixlen)
        if net.version == 4 and self._bits == 128:
            # The IPv4 space is the ::/96 subtree; the leading zero bits leave prefix unchanged.
            prefix_len += 96
        return prefix_len, prefix

    def _prefix_to_net(self, prefix_len: int, prefix: int) -> Network:
        value = prefix << (self._bits - prefix_len)
        if self._bits == 32:
            return ipaddress.IPv4Network((value, prefix_len))
        if prefix_len >= 96 and (value >> 32) == 0:
            return ipaddress.IPv4Network((value, prefix_len - 96))
        return ipaddress.IPv6Network((value, prefix_len))

    def _descend(self, net: Network, prefix_len: int, prefix: int) -> List:
        """Walk to the node for prefix, splitting leaves on the way."""
        node = self._trie
        for i in range(prefix_len):
            if len(node) == 0:
                node.append([])
                node.append([])
            elif len(node) == 1:
                old = node[0]
                if old is _RESERVED:
                    raise InsertionError("cannot insert %s into a reserved network" % net)
                node.clear()
                node.append([old])
                node.append([old])
            node = node[(prefix >> (prefix_len - 1 - i)) & 1]
        if len(node) == 1 and node[0] is _RESERVED:
            raise InsertionError("cannot insert %s into a reserved network" % net)
        return node

    @staticmethod
    def _replace(node: List, value: Any) -> None:
        """Set every record below node to value, leaving reserved subnets alone."""
        if len(node) == 2:
            MMDBTree._replace(node[0], value)
            MMDBTree._replace(node[1], value)
            if len(node[0]) == 1 and len(node[1]) == 1 and node[0][0] is value and node[1][0] is value:
                node.clear()
                node.append(value)
        elif not (len(node) == 1 and node[0] is _RESERVED):
            node.clear()
            node.append(value)

    def insert(self, net: Union[Network, str], value: Any) -> None:
        """
        Map a network to value.

        Args:
            net: An ipaddress network, or a string in CIDR notation.
            value: Anything encode_value accepts.
        Raises:
            InsertionError: net is not a valid network, is IPv6 while the tree
                            is IPv4, or lies in an excluded reserved range.
        """
        if value is None:
            raise InsertionError("cannot insert an empty value for %s" % net)
        if isinstance(net, str):
            try:
                net = ipaddress.ip_network(net)
            except ValueError as err:
                raise InsertionError("invalid network '%s': %s" % (net, err)) from err
        prefix_len, prefix = self._net_to_prefix(net)
        self._replace(self._descend(net, prefix_len, prefix), value)

    def to_entries(self) -> List[Tuple[Network, Any]]:
        """Convert the mappings in this tree to a list of non-overlapping (network, value) pairs."""
        def recurse(node: List, prefix_len: int, prefix: int):
            ret = []
            if len(node) == 1 and node[0] is not _RESERVED:
                ret = [(self._prefix_to_net(prefix_len, prefix), node[0])]
            elif len(node) == 2:
                ret = recurse(node[0], prefix_len + 1, prefix << 1)
                ret += recurse(node[1], prefix_len + 1, (prefix << 1) | 1)
            return ret
        return recurse(self._trie, 0, 0)

    @staticmethod
    def _simplify(trie: List) -> None:
        """Merge sibling leaves holding equal values."""
        def recurse(node: List) -> None:
            if len(node) < 2:
                return
            recurse(node[0])
            recurse(node[1])
            if len(node[0]) == 2 or len(node[0]) != len(node[1]):
                return
            if len(node[0]) == 0:
                node.clear()
                return
            left, right = node[0][0], node[1][0]
            if left is right or (type(left) is type(right) and left == right):
                node.clear()
                node.append(left)
        recurse(trie)

    def _pin_ipv4_subtree(self) -> None:
        """
        Keep the ::/96 path made of inner nodes down to the IPv4 root.

        Readers locate the IPv4 subtree by following 96 left branches, and skip
        any record pointing at the node they find there when iterating.

        A value covering ::/95 or more leaves a record at ::1:0:0/96 after the
        split. maxminddb's iterator treats start addresses up to and including
        2**32 as IPv4, so it cannot list that record; lookups still find it.
        Splitting further does not help: every network holding ::1:0:0 starts
        at ::1:0:0 or at ::.
        """
        node = self._trie
        for _ in range(97):
            if len(node) == 0:
                return
            if len(node) == 1:
                value = node[0]
                node.clear()
                node.append([value])
                node.append([value])
            node = node[0]

    def _alias_ipv4_subtree(self) -> None:
        """Point every range in IPV4_ALIASES at the pinned IPv4 root node."""
        ipv4_root = self._trie
        for _ in range(96):
            if len(ipv4_root) != 2:
                return
            ipv4_root = ipv4_root[0]
        if len(ipv4_root) != 2:
            return
        for net in IPV4_ALIASES:
            prefix_len, prefix = self._net_to_prefix(net)
            parent = self._descend(net, prefix_len - 1, prefix >> 1)
            if len(parent) == 0:
                parent[:] = [[], []]
            elif len(parent) == 1:
                parent[:] = [[parent[0]], [parent[0]]]
            parent[prefix & 1] = ipv4_root

    def to_binary(self) -> bytes:
        """
        Convert this tree to a MaxMind DB file.

        Returns:
            The bytes of the file; identical trees and metadata give identical bytes.
        Raises:
            CapacityError: the tree or data section is too large for the record size.
        """
        self._simplify(self._trie)
        if self._bits == 128:
            self._pin_ipv4_subtree()
            if self.ipv4_aliasing:
                self._alias_ipv4_subtree()
        if len(self._trie) != 2:
            # The search tree needs at least one node.
            self._trie[:] = [list(self._trie), list(self._trie)]

        # Number the nodes in pre-order, left before right. Aliased nodes are numbered once.
        nodes: List[List] = []
        seen = set()
        stack = [self._trie]
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            nodes.append(node)
            if len(node[1]) == 2:
                stack.append(node[1])
            if len(node[0]) == 2:
                stack.append(node[0])
        index = {id(node): i for i, node in enumerate(nodes)}
        node_count = len(nodes)

        data = bytearray()
        offsets: Dict[bytes, int] = {}
        def record(child: List) -> int:
            if len(child) == 2:
                return index[id(child)]
            if len(child) == 0 or child[0] is _RESERVED:
                return node_count
            enc = encode_value(child[0])
            if enc not in offsets:
                offsets[enc] = len(data)
                data.extend(enc)
            return node_count + len(DATA_SECTION_SEPARATOR) + offsets[enc]

        records = [(record(node[0]), record(node[1])) for node in nodes]
        record_size = self.metadata.record_size
        if node_count + len(DATA_SECTION_SEPARATOR) + len(data) >= (1 << record_size):
            raise CapacityError("%i nodes and %i bytes of data do not fit in %i-bit records"
                                % (node_count, len(data), record_size))

        tree = bytearray()
        for left, right in records:
            if record_size == 24:
                tree += left.to_bytes(3, 'big') + right.to_bytes(3, 'big')
            elif record_size == 28:
                tree += (left & 0xFFFFFF).to_bytes(3, 'big')
                tree.append(((left >> 24) << 4) | (right >> 24))
                tree += (right & 0xFFFFFF).to_bytes(3, 'big')
            else:
                tree += left.to_bytes(4, 'big') + right.to_bytes(4, 'big')

        metadata = {
            'binary_format_major_version': Uint16(2),
            'binary_format_minor_version': Uint16(0),
            'build_epoch': Uint64(self.metadata.build_epoch),
            'database_type': self.metadata.database_type,
            'description': dict(self.metadata.description or {}),
            'ip_version': Uint16(self.metadata.ip_version),
            'languages': sorted(set(self.metadata.languages)),
            'node_count': Uint32(node_count),
            'record_size': Uint16(record_size),
        }
        return (bytes(tree) + DATA_SECTION_SEPARATOR + bytes(data) +
                METADATA_START_MARKER + encode_value(metadata))

    def write_to(self, stream: BinaryIO) -> int:
        """Write this tree to a binary stream, returning the number of bytes written."""
        contents = self.to_binary()
        stream.write(contents)
        return len(contents)

    @staticmethod
    def from_reader(reader: maxminddb.reader.Reader, languages: Iterable[str] = ()) -> MMDBTree:
        """
        Construct a tree holding every association of an open database.

        The database's languages are extended with any of the given languages
        it does not list yet. Type, IP version, record size, build epoch and
        description are kept.
        """
        old = reader.metadata()
        merged = tuple(dict.fromkeys(list(old.languages) + list(languages)))
        tree = MMDBTree(DatabaseMetadata(
            database_type=old.database_type,
            languages=merged,
            ip_version=old.ip_version,
            record_size=old.record_size,
            build_epoch=old.build_epoch,
            description=dict(old.description),
        ))
        for net, value in reader:
            tree.insert(net, value)
        return tree


class TestMMDBTree(unittest.TestCase):
    """Unit tests for this module."""

    def _metadata(self, **kwargs) -> DatabaseMetadata:
        fields = {'database_type': 'test', 'languages': ('b', 'a'), 'build_epoch': 1700000000}
        fields.update(kwargs)
        return DatabaseMetadata(**fields)

    def test_replace_overwrites_covered_records(self) -> None:
        """Test that a later insert replaces more specific earlier ones."""
        tree = MMDBTree(self._metadata())
        tree.insert("1.0.0.0/16", "a")
        tree.insert("1.0.1.0/24", "b")
        entries = dict(tree.to_entries())
        self.assertEqual(entries[ipaddress.ip_network("1.0.1.0/24")], "b")
        self.assertEqual(set(entries.values()), {"a", "b"})
        tree.insert("1.0.0.0/16", "c")
        self.assertEqual(tree.to_entries(), [(ipaddress.ip_network("1.0.0.0/16"), "c")])

    def test_lookup_after_split(self) -> None:
        """Test that a more specific insert splits a covering network."""
        tree = MMDBTree(self._metadata())
        tree.insert(ipaddress.ip_network("10.0.0.0/8"), "a")
        tree.insert(ipaddress.ip_network("10.1.0.0/16"), "b")
        tree.insert(ipaddress.ip_network("2001:db8::/32"), "c")
        with open_reader(tree.to_binary()) as reader:
            self.assertEqual(reader.get("10.1.2.3"), "b")
            self.assertEqual(reader.get("10.2.0.1"), "a")
            self.assertEqual(reader.get("2001:db8::1"), "c")
            self.assertIsNone(reader.get("11.0.0.1"))

    def test_ipv4_not_aliased(self) -> None:
        """Test that IPv4 data is not reachable through IPv6 alias ranges."""
        tree = MMDBTree(self._metadata())
        tree.insert("1.2.3.0/24", "x")
        with open_reader(tree.to_binary()) as reader:
            self.assertEqual(reader.get("1.2.3.4"), "x")
            self.assertIsNone(reader.get("::ffff:1.2.3.4"))
            self.assertIsNone(reader.get("2002:102:304::"))
            self.assertEqual(list(reader), [(ipaddress.ip_network("1.2.3.0/24"), "x")])

    def test_ipv4_aliases(self) -> None:
        """Test that aliased ranges resolve to IPv4 data and are skipped when iterating."""
        tree = MMDBTree(self._metadata(), ipv4_aliasing=True)
        tree.insert("1.2.3.0/24", "x")
        tree.insert("2001:db8::/32", "y")
        tree.insert("::ffff:0:0/112", "z")
        data = tree.to_binary()
        with open_reader(data) as reader:
            self.assertEqual(reader.get("1.2.3.4"), "x")
            self.assertEqual(reader.get("::ffff:1.2.3.4"), "x")
            self.assertEqual(reader.get("2002:102:304::"), "x")
            self.assertIsNone(reader.get("::ffff:0:1"))
            self.assertEqual(reader.get("2001:db8::1"), "y")
            self.assertEqual(list(reader), [
                (ipaddress.ip_network("1.2.3.0/24"), "x"),
                (ipaddress.ip_network("2001:db8::/32"), "y"),
            ])
        plain = MMDBTree(self._metadata())
        plain.insert("1.2.3.0/24", "x")
        plain.insert("2001:db8::/32", "y")
        # The shared IPv4 subtree is written once; aliasing only adds the path nodes.
        self.assertLess(len(data) - len(plain.to_binary()), 8 * (95 - 80 + 15))

    def test_wide_ipv6_network(self) -> None:
        """Test lookups when one value covers the whole IPv6 space, IPv4 included."""
        tree = MMDBTree(self._metadata())
        tree.insert("::/0", "zz")
        tree.insert("1.0.1.0/24", "cn")
        with open_reader(tree.to_binary()) as reader:
            self.assertEqual(reader.get("1.0.1.1"), "cn")
            self.assertEqual(reader.get("1.0.2.1"), "zz")
            self.assertEqual(reader.get("::1:0:1"), "zz")
            self.assertEqual(reader.get("::ffff:1.0.1.1"), "zz")
            self.assertEqual(reader.get("2400:cb00::1"), "zz")
            self.assertEqual(reader.get_with_prefix_len("1.0.1.1"), ("cn", 24))

    def test_invalid_networks(self) -> None:
        """Test that malformed or mismatched networks are rejected."""
        tree = MMDBTree(self._metadata(ip_version=4))
        with self.assertRaises(InsertionError):
            tree.insert("2001:db8::/32", "a")
        with self.assertRaises(InsertionError):
            tree.insert("1.2.3.4/33", "a")
        with self.assertRaises(InsertionError):
            tree.insert("1.2.3.4/24", "a")
        tree.insert("1.2.3.0/24", "a")
        with open_reader(tree.to_binary()) as reader:
            self.assertEqual(reader.metadata().ip_version, 4)
            self.assertEqual(reader.get("1.2.3.99"), "a")

    def test_reserved_networks(self) -> None:
        """Test that reserved ranges are kept only when included."""
        tree = MMDBTree(self._metadata(), include_reserved_networks=False)
        with self.assertRaises(InsertionError):
            tree.insert("10.1.0.0/16", "a")
        tree.insert("0.0.0.0/0", "a")
        with open_reader(tree.to_binary()) as reader:
            self.assertEqual(reader.get("8.8.8.8"), "a")
            self.assertIsNone(reader.get("10.0.0.1"))
            self.assertIsNone(reader.get("192.168.1.1"))

        tree = MMDBTree(self._metadata())
        tree.insert("10.0.0.0/8", "a")
        with open_reader(tree.to_binary()) as reader:
            self.assertEqual(reader.get("10.0.0.1"), "a")

    def test_record_sizes(self) -> None:
        """Test that every record size reads back through maxminddb."""
        for record_size in (24, 28, 32):
            tree = MMDBTree(self._metadata(record_size=record_size))
            tree.insert("1.0.0.0/24", "a")
            tree.insert("8.8.8.0/24", "b")
            tree.insert("2400:cb00::/32", "c")
            with open_reader(tree.to_binary()) as reader:
                self.assertEqual(reader.metadata().record_size, record_size)
                self.assertEqual(reader.get("1.0.0.1"), "a")
                self.assertEqual(reader.get("8.8.8.8"), "b")
                self.assertEqual(reader.get("2400:cb00::1"), "c")

    def test_data_types(self) -> None:
        """Test that values of every supported type decode unchanged."""
        value = {
            "string": "x",
            "long": "y" * 300,
            "uint16": Uint16(7),
            "uint64": Uint64(1 << 40),
            "uint128": 1 << 100,
            "negative": -5,
            "double": 1.5,
            "bool": True,
            "array": [1, "two"],
            "map": {"bytes": b"\x00\x01"},
        }
        tree = MMDBTree(self._metadata())
        tree.insert("5.6.7.0/24", value)
        with open_reader(tree.to_binary()) as reader:
            self.assertEqual(reader.get("5.6.7.8"), value)

    def test_metadata(self) -> None:
        """Test that metadata is written with sorted languages."""
        tree = MMDBTree(self._metadata(description={"en": "test db"}))
        tree.insert("1.0.0.0/24", "a")
        with open_reader(tree.to_binary()) as reader:
            meta = reader.metadata()
            self.assertEqual(meta.database_type, "test")
            self.assertEqual(meta.languages, ["a", "b"])
            self.assertEqual(meta.ip_version, 6)
            self.assertEqual(meta.build_epoch, 1700000000)
            self.assertEqual(meta.description, {"en": "test db"})
            self.assertEqual(meta.binary_format_major_version, 2)

    def test_deterministic(self) -> None:
        """Test that insertion order of disjoint networks does not change the output."""
        nets = [("1.0.0.0/24", "a"), ("2.0.0.0/16", "b"), ("2001:200::/23", "a"), ("3.0.0.0/8", "c")]
        tree1 = MMDBTree(self._metadata())
        tree2 = MMDBTree(self._metadata())
        for net, value in nets:
            tree1.insert(net, value)
        for net, value in reversed(nets):
            tree2.insert(net, value)
        self.assertEqual(tree1.to_binary(), tree2.to_binary())

    def test_from_reader(self) -> None:
        """Test that loading a database keeps its associations and extends its languages."""
        tree = MMDBTree(self._metadata(languages=("cn",)))
        tree.insert("1.0.1.0/24", "cn")
        tree.insert("2001:250::/32", "cn")
        with open_reader(tree.to_binary()) as reader:
            loaded = MMDBTree.from_reader(reader, ["jp", "cn"])
        self.assertEqual(loaded.metadata.languages, ("cn", "jp"))
        self.assertEqual(loaded.metadata.build_epoch, 1700000000)
        loaded.insert("1.0.16.0/20", "jp")
        self.assertEqual(sorted(loaded.to_entries(), key=lambda x: (x[0].version, x[0])), [
            (ipaddress.ip_network("1.0.1.0/24"), "cn"),
            (ipaddress.ip_network("1.0.16.0/20"), "jp"),
            (ipaddress.ip_network("2001:250::/32"), "cn"),
        ])


if __name__ == '__main__':
    unittest.main()
