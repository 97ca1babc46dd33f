# Copyright (c) 2022 Pieter Wuille
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

"""
This module provides the HeadlessRule and PlainRuleSet classes, and the
sing-box binary rule-set (.srs) encoding for them.
"""

from __future__ import annotations
import io
import ipaddress
import struct
import unittest
import zlib
from typing import BinaryIO, Iterable, List, Tuple, Union

Address = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]

MAGIC_BYTES = b"SRS"
VERSION = 1

# Rule types and rule item types, as numbered by sing-box.
_RULE_TYPE_DEFAULT = 0
_ITEM_IP_CIDR = 6
_ITEM_FINAL = 0xFF

_IP_SET_VERSION = 1


class HeadlessRule:
    """A default rule matching destination addresses against a CIDR list."""

    def __init__(self, ip_cidr: List[str], invert: bool = False) -> None:
        self.ip_cidr = list(ip_cidr)
        self.invert = invert

    def __eq__(self, other: object) -> bool:
        if isinstance(other, HeadlessRule):
            return self.ip_cidr == other.ip_cidr and self.invert == other.invert
        return False

    def __repr__(self) -> str:
        return "HeadlessRule(%r, invert=%r)" % (self.ip_cidr, self.invert)


class PlainRuleSet:
    """An ordered list of headless rules."""

    def __init__(self, rules: List[HeadlessRule]) -> None:
        self.rules = list(rules)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PlainRuleSet):
            return self.rules == other.rules
        return False

    def __repr__(self) -> str:
        return "PlainRuleSet(%r)" % self.rules


def _write_uvarint(val: int, ret: bytearray) -> None:
    """Append the LEB128 encoding of val onto ret."""
    while val >= 0x80:
        ret.append((val & 0x7F) | 0x80)
        val >>= 7
    ret.append(val)


def _read_uvarint(data: bytes, pos: int) -> Tuple[int, int]:
    """Decode a LEB128 number starting at pos, returning value and new pos."""
    val = 0
    shift = 0
    while True:
        byte = data[pos]
        pos += 1
        val |= (byte & 0x7F) << shift
        if byte < 0x80:
            return val, pos
        shift += 7
        if shift > 63:
            raise ValueError("uvarint overflows 64 bits")


def cidrs_to_ranges(cidrs: Iterable[str]) -> List[Tuple[Address, Address]]:
    """
    Convert CIDR strings to sorted, non-overlapping address ranges.

    Overlapping and adjacent networks are merged, and IPv4 ranges sort before
    IPv6 ranges. Host bits and bare addresses are accepted.
    """
    nets = []
    for i, cidr in enumerate(cidrs):
        try:
            nets.append(ipaddress.ip_network(cidr, strict=False))
        except ValueError as err:
            raise ValueError("parse [%i]: %s" % (i, err)) from err
    merged: List[List[int]] = []
    for net in sorted(nets, key=lambda n: (n.version, n.network_address, n.broadcast_address)):
        first, last = int(net.network_address), int(net.broadcast_address)
        if merged and merged[-1][0] == net.version and first <= merged[-1][2] + 1:
            merged[-1][2] = max(merged[-1][2], last)
        else:
            merged.append([net.version, first, last])
    ret = []
    for version, first, last in merged:
        cls = ipaddress.IPv4Address if version == 4 else ipaddress.IPv6Address
        ret.append((cls(first), cls(last)))
    return ret


def ranges_to_cidrs(ranges: Iterable[Tuple[Address, Address]]) -> List[str]:
    """Convert address ranges to the minimal list of CIDR strings covering them."""
    ret = []
    for first, last in ranges:
        ret.extend(str(net) for net in ipaddress.summarize_address_range(first, last))
    return ret


def _write_ip_set(cidrs: List[str], ret: bytearray) -> None:
    ranges = cidrs_to_ranges(cidrs)
    ret.append(_IP_SET_VERSION)
    ret += struct.pack('>Q', len(ranges))
    for first, last in ranges:
        for addr in (first, last):
            _write_uvarint(len(addr.packed), ret)
            ret += addr.packed


def _read_ip_set(data: bytes, pos: int) -> Tuple[List[Tuple[Address, Address]], int]:
    if data[pos] != _IP_SET_VERSION:
        raise ValueError("unsupported IP set version %i" % data[pos])
    if pos + 9 > len(data):
        raise ValueError("truncated IP set")
    count, = struct.unpack_from('>Q', data, pos + 1)
    pos += 9
    ranges = []
    for _ in range(count):
        addrs = []
        for _ in range(2):
            size, pos = _read_uvarint(data, pos)
            if size not in (4, 16) or pos + size > len(data):
                raise ValueError("invalid address of %i bytes" % size)
            addrs.append(ipaddress.ip_address(data[pos:pos + size]))
            pos += size
        ranges.append((addrs[0], addrs[1]))
    return ranges, pos


def to_binary(rule_set: PlainRuleSet) -> bytes:
    """
    Encode a rule-set in the sing-box binary format.

    The file is the magic bytes and a version byte, followed by a zlib stream
    holding the rule count and, per rule, its type, its items, the final item
    marker and the invert flag. The CIDR item is stored as an IP set of merged
    ranges, so the decoded CIDR list is normalized.
    """
    body = bytearray()
    _write_uvarint(len(rule_set.rules), body)
    for rule in rule_set.rules:
        body.append(_RULE_TYPE_DEFAULT)
        if rule.ip_cidr:
            body.append(_ITEM_IP_CIDR)
            _write_ip_set(rule.ip_cidr, body)
        body.append(_ITEM_FINAL)
        body.append(1 if rule.invert else 0)
    return MAGIC_BYTES + bytes([VERSION]) + zlib.compress(bytes(body), 9)


def write_rule_set(stream: BinaryIO, rule_set: PlainRuleSet) -> int:
    """Write a rule-set to a binary stream, returning the number of bytes written."""
    contents = to_binary(rule_set)
    stream.write(contents)
    return len(contents)


def read_rule_set(data: bytes) -> PlainRuleSet:
    """Decode a binary rule-set holding default rules with CIDR items."""
    if data[:len(MAGIC_BYTES)] != MAGIC_BYTES or len(data) < len(MAGIC_BYTES) + 1:
        raise ValueError("not a binary rule-set")
    version = data[len(MAGIC_BYTES)]
    if not 1 <= version <= 3:
        raise ValueError("unsupported rule-set version %i" % version)
    try:
        body = zlib.decompress(data[len(MAGIC_BYTES) + 1:])
    except zlib.error as err:
        raise ValueError("corrupt rule-set body: %s" % err) from err

    rules = []
    try:
        count, pos = _read_uvarint(body, 0)
        for _ in range(count):
            if body[pos] != _RULE_TYPE_DEFAULT:
                raise ValueError("unsupported rule type %i" % body[pos])
            pos += 1
            ip_cidr: List[str] = []
            while body[pos] != _ITEM_FINAL:
                if body[pos] != _ITEM_IP_CIDR:
                    raise ValueError("unsupported rule item %i" % body[pos])
                ranges, pos = _read_ip_set(body, pos + 1)
                ip_cidr += ranges_to_cidrs(ranges)
            invert = body[pos + 1] != 0
            pos += 2
            rules.append(HeadlessRule(ip_cidr, invert=invert))
    except IndexError as err:
        raise ValueError("truncated rule-set") from err
    if pos != len(body):
        raise ValueError("%i trailing bytes after rule-set" % (len(body) - pos))
    return PlainRuleSet(rules)


class TestRuleSet(unittest.TestCase):
    """Unit tests for this module."""

    def test_single_rule(self) -> None:
        """Test that a CIDR list survives encoding in order."""
        stream = io.BytesIO()
        write_rule_set(stream, PlainRuleSet([HeadlessRule(["1.2.3.0/24", "5.6.7.0/24"])]))
        rule_set = read_rule_set(stream.getvalue())
        self.assertEqual(len(rule_set.rules), 1)
        self.assertEqual(rule_set.rules[0].ip_cidr, ["1.2.3.0/24", "5.6.7.0/24"])
        self.assertFalse(rule_set.rules[0].invert)

    def test_encoding(self) -> None:
        """Test the exact layout of a one-range rule-set."""
        data = to_binary(PlainRuleSet([HeadlessRule(["1.2.3.0/24"])]))
        self.assertEqual(data[:4], b"SRS\x01")
        self.assertEqual(data[4:6], b"\x78\xda")
        self.assertEqual(zlib.decompress(data[4:]), bytes(
            [1, 0, 6, 1] + [0] * 7 + [1] + [4, 1, 2, 3, 0] + [4, 1, 2, 3, 255] + [0xFF, 0]))

    def test_ranges_merge(self) -> None:
        """Test that overlapping and adjacent networks merge, IPv4 first."""
        cidrs = ["2001:db8::/32", "10.0.1.0/24", "10.0.0.0/24", "10.0.0.128/25", "192.168.0.1"]
        rule_set = read_rule_set(to_binary(PlainRuleSet([HeadlessRule(cidrs)])))
        self.assertEqual(rule_set.rules[0].ip_cidr,
                         ["10.0.0.0/23", "192.168.0.1/32", "2001:db8::/32"])
        self.assertEqual(cidrs_to_ranges(["::/127", "::2/127"]),
                         [(ipaddress.IPv6Address("::"), ipaddress.IPv6Address("::3"))])

    def test_invalid(self) -> None:
        """Test that malformed input is rejected."""
        with self.assertRaises(ValueError):
            read_rule_set(b"XYZ\x01")
        with self.assertRaises(ValueError):
            read_rule_set(b"SRS\x01" + zlib.compress(bytes([1, 0, 6, 1])))
        with self.assertRaises(ValueError):
            to_binary(PlainRuleSet([HeadlessRule(["not-a-network"])]))


if __name__ == '__main__':
    unittest.main()
