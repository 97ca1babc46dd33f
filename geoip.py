# Copyright (c) 2022 Pieter Wuille
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

"""
This module turns an ipinfo country database into sing-geoip databases and
per-label sing-box rule-sets.
"""

from __future__ import annotations
import ipaddress
import os
import shutil
import struct
import subprocess
import sys
import tempfile
import unittest
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import maxminddb

import srs
from errors import ForeignDatabaseError, MalformedSourceError, WriteError
from mmdb import DatabaseMetadata, MMDBTree, open_reader

Network = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

DATABASE_TYPE = "sing-geoip"
FILTER_LABEL = "cn"

# Failures maxminddb can surface on a damaged file.
_DECODE_ERRORS = (maxminddb.InvalidDatabaseError, KeyError, TypeError, ValueError,
                  IndexError, struct.error)


def open_source(data: bytes, name: str = "<source>") -> maxminddb.reader.Reader:
    """Open the bytes of a MaxMind DB file, validating its metadata."""
    try:
        return open_reader(data, name)
    except _DECODE_ERRORS as err:
        raise MalformedSourceError("Database '%s' cannot be parsed: %s" % (name, err)) from err


def resolve_label(record: Any, primary: str = "country", secondary: str = "continent") -> Optional[str]:
    """
    Derive the label of a source record.

    The primary field (country code) wins when set; otherwise the secondary
    field (continent code) is used. Both are lowercased. Records with neither
    resolve to None.
    """
    if not isinstance(record, dict):
        return None
    for field in (primary, secondary):
        code = record.get(field)
        if isinstance(code, str) and code:
            return code.lower()
    return None


class NetworkAggregation:
    """
    Networks grouped by label.

    networks maps each label to its networks, in source order. Networks
    without a label are only counted, in skipped.
    """

    def __init__(self) -> None:
        self.networks: Dict[str, List[Network]] = {}
        self.skipped = 0

    def add(self, net: Network, label: Optional[str]) -> None:
        if label is None:
            self.skipped += 1
            return
        self.networks.setdefault(label, []).append(net)

    def labels(self) -> List[str]:
        """All labels seen, sorted."""
        return sorted(self.networks)

    @property
    def total(self) -> int:
        return sum(len(nets) for nets in self.networks.values()) + self.skipped


def parse(data: bytes, name: str = "<source>") -> Tuple[DatabaseMetadata, NetworkAggregation]:
    """
    Read every network of a source database and group it by label.

    Returns:
        The source metadata, and the aggregation of its networks.
    Raises:
        MalformedSourceError: data is not a readable MaxMind DB file.
    """
    with open_source(data, name) as reader:
        meta = reader.metadata()
        metadata = DatabaseMetadata(
            database_type=meta.database_type,
            languages=tuple(meta.languages),
            ip_version=meta.ip_version,
            record_size=meta.record_size,
            build_epoch=meta.build_epoch,
            description=dict(meta.description),
        )
        aggregation = NetworkAggregation()
        try:
            for net, record in reader:
                aggregation.add(net, resolve_label(record))
        except _DECODE_ERRORS as err:
            raise MalformedSourceError("Database '%s' is truncated or corrupt: %s" % (name, err)) from err
    return metadata, aggregation


def new_writer(metadata: DatabaseMetadata, labels: Iterable[str]) -> MMDBTree:
    """Create an empty sing-geoip tree with the source's IP version and record size."""
    return MMDBTree(DatabaseMetadata(
        database_type=DATABASE_TYPE,
        languages=tuple(sorted(set(labels))),
        ip_version=metadata.ip_version,
        record_size=metadata.record_size,
        build_epoch=metadata.build_epoch,
    ))


def open_writer(path: str, labels: Iterable[str]) -> MMDBTree:
    """
    Load an existing sing-geoip database so more labels can be added to it.

    Raises:
        MalformedSourceError: the file cannot be read or parsed.
        ForeignDatabaseError: the file is not a sing-geoip database.
    """
    try:
        with open(path, 'rb') as f:
            data = f.read()
    except OSError as err:
        raise MalformedSourceError("Database '%s' cannot be read: %s." % (path, err.strerror)) from err
    with open_source(data, path) as reader:
        database_type = reader.metadata().database_type
        if database_type != DATABASE_TYPE:
            raise ForeignDatabaseError("Database '%s' has type '%s', expected '%s'."
                                       % (path, database_type, DATABASE_TYPE))
        try:
            return MMDBTree.from_reader(reader, labels)
        except _DECODE_ERRORS as err:
            raise MalformedSourceError("Database '%s' is truncated or corrupt: %s" % (path, err)) from err


def write(tree: MMDBTree, aggregation: NetworkAggregation, output: str,
          labels: Optional[Iterable[str]] = None) -> int:
    """
    Insert the networks of the allowed labels into tree and write it to output.

    Labels outside the allow-list are skipped; an empty allow-list allows
    every label of the aggregation. Returns the number of bytes written.
    """
    allowed = sorted(set(labels or aggregation.labels()))
    for label in allowed:
        for net in aggregation.networks.get(label, ()):
            tree.insert(net, label)
    try:
        with open(output, 'wb') as f:
            size = tree.write_to(f)
    except OSError as err:
        raise WriteError("Output file '%s' cannot be written to: %s." % (output, err.strerror)) from err
    print("[INFO] Wrote %s (%i labels, %i bytes)" % (output, len(allowed), size), file=sys.stderr)
    return size


def rule_set_path(directory: str, label: str) -> str:
    return os.path.join(directory, "geoip-" + label + ".srs")


def write_rule_sets(aggregation: NetworkAggregation, directory: str) -> List[str]:
    """
    Recreate directory and write one rule-set per label into it.

    Returns the paths written, in label order.
    """
    try:
        if os.path.isdir(directory) and not os.path.islink(directory):
            shutil.rmtree(directory)
        elif os.path.lexists(directory):
            os.remove(directory)
        os.makedirs(directory, 0o755)
    except OSError as err:
        raise WriteError("Rule-set directory '%s' cannot be reset: %s." % (directory, err.strerror)) from err

    paths = []
    for label in aggregation.labels():
        path = os.path.abspath(rule_set_path(directory, label))
        rule_set = srs.PlainRuleSet([srs.HeadlessRule([str(net) for net in aggregation.networks[label]])])
        print("[INFO] Writing %s" % path, file=sys.stderr)
        try:
            with open(path, 'wb') as f:
                srs.write_rule_set(f, rule_set)
        except OSError as err:
            raise WriteError("Output file '%s' cannot be written to: %s." % (path, err.strerror)) from err
        paths.append(path)
    return paths


def release(data: bytes, output: str = "geoip.db", cn_output: str = "geoip-cn.db",
            rule_set_output: str = "rule-set", extend: bool = False,
            name: str = "<source>") -> NetworkAggregation:
    """
    Run the whole transcoding: the full database, the cn-only database and the rule-sets.

    With extend, an existing cn-only database is loaded and added to instead
    of starting from an empty tree.
    """
    metadata, aggregation = parse(data, name)
    print("[INFO] Read %i networks under %i labels"
          % (aggregation.total - aggregation.skipped, len(aggregation.networks)), file=sys.stderr)
    if aggregation.skipped:
        print("[WARNING] Skipped %i networks without country or continent" % aggregation.skipped,
              file=sys.stderr)

    write(new_writer(metadata, aggregation.labels()), aggregation, output)

    if extend and os.path.exists(cn_output):
        writer = open_writer(cn_output, [FILTER_LABEL])
    else:
        writer = new_writer(metadata, [FILTER_LABEL])
    write(writer, aggregation, cn_output, [FILTER_LABEL])

    write_rule_sets(aggregation, rule_set_output)
    return aggregation


def _net(text: str) -> Network:
    return ipaddress.ip_network(text)


class TestGeoIP(unittest.TestCase):
    """Unit tests for this module."""

    SOURCE = [
        ("1.0.1.0/24", {"country": "CN", "continent": "AS", "country_name": "China"}),
        ("1.0.8.0/21", {"country": "CN", "continent": "AS"}),
        ("1.0.16.0/20", {"country": "JP", "continent": "AS"}),
        ("5.0.0.0/16", {"country": "", "continent": ""}),
        ("6.0.0.0/16", {"continent_name": "Nowhere"}),
        ("8.8.8.0/24", {"country": "US", "continent": "NA"}),
        ("2001:250::/32", {"country": "CN", "continent": "AS"}),
        ("2400:cb00::/32", {"country": "", "continent": "EU"}),
    ]

    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.dir = tmp.name
        self.source = self._source()

    def _source(self, ipv4_aliasing: bool = False) -> bytes:
        tree = MMDBTree(DatabaseMetadata(database_type="ipinfo generic_country_free.mmdb",
                                         languages=("en",), record_size=32, build_epoch=1700000000),
                        ipv4_aliasing=ipv4_aliasing)
        for net, record in self.SOURCE:
            tree.insert(net, record)
        return tree.to_binary()

    def _path(self, name: str) -> str:
        return os.path.join(self.dir, name)

    def _read(self, path: str) -> Tuple[Any, Dict[str, List[Network]]]:
        with open(path, 'rb') as f:
            data = f.read()
        with open_reader(data, path) as reader:
            labelled: Dict[str, List[Network]] = {}
            for net, label in reader:
                labelled.setdefault(label, []).append(net)
            return reader.metadata(), labelled

    def test_resolve_label(self) -> None:
        """Test that country wins over continent, and continent is the fallback."""
        self.assertEqual(resolve_label({"country": "US", "continent": "NA"}), "us")
        self.assertEqual(resolve_label({"country": "", "continent": "EU"}), "eu")
        self.assertEqual(resolve_label({"continent": "AF"}), "af")
        self.assertIsNone(resolve_label({"country": "", "continent": ""}))
        self.assertIsNone(resolve_label({}))
        self.assertIsNone(resolve_label("US"))

    def test_parse(self) -> None:
        """Test that every labelled network lands under exactly its label."""
        metadata, aggregation = parse(self.source)
        self.assertEqual(metadata.ip_version, 6)
        self.assertEqual(metadata.record_size, 32)
        self.assertEqual(aggregation.networks, {
            "cn": [_net("1.0.1.0/24"), _net("1.0.8.0/21"), _net("2001:250::/32")],
            "jp": [_net("1.0.16.0/20")],
            "us": [_net("8.8.8.0/24")],
            "eu": [_net("2400:cb00::/32")],
        })
        self.assertEqual(aggregation.skipped, 2)
        self.assertEqual(aggregation.total, len(self.SOURCE))
        self.assertEqual(aggregation.labels(), ["cn", "eu", "jp", "us"])

    def test_parse_aliased_source(self) -> None:
        """Test that IPv4 networks reachable through alias ranges are read once."""
        source = self._source(ipv4_aliasing=True)
        with open_reader(source) as reader:
            self.assertEqual(reader.get("::ffff:1.0.1.1")["country"], "CN")
            self.assertEqual(reader.get("2002:100:101::")["country"], "CN")
        metadata, aggregation = parse(source)
        _, plain = parse(self.source)
        self.assertEqual(aggregation.networks, plain.networks)
        self.assertEqual(aggregation.skipped, 2)
        self.assertEqual(aggregation.total, len(self.SOURCE))

        output = self._path("geoip.db")
        write(new_writer(metadata, aggregation.labels()), aggregation, output)
        _, labelled = self._read(output)
        self.assertEqual(labelled["cn"], [_net("1.0.1.0/24"), _net("1.0.8.0/21"), _net("2001:250::/32")])

    def test_parse_malformed(self) -> None:
        """Test that unreadable input is reported as malformed."""
        with self.assertRaises(MalformedSourceError):
            parse(b"this is not a database")
        with self.assertRaises(MalformedSourceError):
            parse(self.source[:len(self.source) - 40])

    def test_full_roundtrip(self) -> None:
        """Test that the full database reproduces the aggregation."""
        metadata, aggregation = parse(self.source)
        output = self._path("geoip.db")
        write(new_writer(metadata, aggregation.labels()), aggregation, output)
        meta, labelled = self._read(output)
        self.assertEqual(meta.database_type, "sing-geoip")
        self.assertEqual(meta.languages, ["cn", "eu", "jp", "us"])
        self.assertEqual(meta.record_size, 32)
        self.assertEqual(labelled, aggregation.networks)
        with open(output, 'rb') as f:
            with open_reader(f.read()) as reader:
                self.assertEqual(reader.get("1.0.1.1"), "cn")
                self.assertIsNone(reader.get("::ffff:1.0.1.1"))

    def test_filtered(self) -> None:
        """Test that the cn-only database holds nothing but cn."""
        metadata, aggregation = parse(self.source)
        output = self._path("geoip-cn.db")
        write(new_writer(metadata, [FILTER_LABEL]), aggregation, output, [FILTER_LABEL])
        meta, labelled = self._read(output)
        self.assertEqual(meta.languages, ["cn"])
        self.assertEqual(labelled, {"cn": aggregation.networks["cn"]})

    def test_deterministic(self) -> None:
        """Test that two runs on the same input give identical files."""
        outputs = []
        for i in range(2):
            metadata, aggregation = parse(self.source)
            output = self._path("geoip-%i.db" % i)
            write(new_writer(metadata, aggregation.labels()), aggregation, output)
            with open(output, 'rb') as f:
                outputs.append(f.read())
        self.assertEqual(outputs[0], outputs[1])

    def test_open_writer(self) -> None:
        """Test that a cn-only database can be extended with another label."""
        metadata, aggregation = parse(self.source)
        output = self._path("geoip-cn.db")
        write(new_writer(metadata, [FILTER_LABEL]), aggregation, output, [FILTER_LABEL])
        tree = open_writer(output, ["jp"])
        self.assertEqual(tree.metadata.languages, ("cn", "jp"))
        write(tree, aggregation, output, ["jp"])
        meta, labelled = self._read(output)
        self.assertEqual(meta.languages, ["cn", "jp"])
        self.assertEqual(labelled, {"cn": aggregation.networks["cn"], "jp": aggregation.networks["jp"]})

    def test_open_writer_foreign(self) -> None:
        """Test that only sing-geoip databases can be extended."""
        path = self._path("source.mmdb")
        with open(path, 'wb') as f:
            f.write(self.source)
        with self.assertRaises(ForeignDatabaseError):
            open_writer(path, [FILTER_LABEL])
        with self.assertRaises(MalformedSourceError):
            open_writer(self._path("missing.db"), [FILTER_LABEL])

    def test_write_rule_sets(self) -> None:
        """Test that the rule-set directory is reset and holds one file per label."""
        directory = self._path("rule-set")
        os.makedirs(directory)
        with open(rule_set_path(directory, "xx"), 'wb') as f:
            f.write(b"stale")
        _, aggregation = parse(self.source)
        write_rule_sets(aggregation, directory)
        self.assertEqual(sorted(os.listdir(directory)),
                         ["geoip-cn.srs", "geoip-eu.srs", "geoip-jp.srs", "geoip-us.srs"])
        with open(rule_set_path(directory, "cn"), 'rb') as f:
            rule_set = srs.read_rule_set(f.read())
        self.assertEqual(rule_set, srs.PlainRuleSet([srs.HeadlessRule(
            ["1.0.1.0/24", "1.0.8.0/21", "2001:250::/32"])]))

    def test_release(self) -> None:
        """Test the whole pipeline, including extending an existing cn-only database."""
        output, cn_output = self._path("geoip.db"), self._path("geoip-cn.db")
        directory = self._path("rule-set")
        aggregation = release(self.source, output, cn_output, directory)
        self.assertEqual(len(os.listdir(directory)), len(aggregation.networks))
        with open(cn_output, 'rb') as f:
            first = f.read()
        release(self.source, output, cn_output, directory, extend=True)
        with open(cn_output, 'rb') as f:
            self.assertEqual(f.read(), first)

    def test_write_error(self) -> None:
        """Test that an unwritable output is reported as a write error."""
        metadata, aggregation = parse(self.source)
        with self.assertRaises(WriteError):
            write(new_writer(metadata, aggregation.labels()), aggregation,
                  self._path("missing/geoip.db"))


class TestGeoIPTool(unittest.TestCase):
    """Tests running geoip-tool.py as a command."""

    TOOL = os.path.join(os.path.dirname(os.path.abspath(__file__)), "geoip-tool.py")
    SOURCE = TestGeoIP.SOURCE
    _source = TestGeoIP._source

    def setUp(self) -> None:
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.dir = tmp.name
        self.env = dict(os.environ)
        self.env.pop("IPINFO_TOKEN", None)

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run([sys.executable, self.TOOL] + list(args), cwd=self.dir, env=self.env,
                              stdout=subprocess.PIPE, stderr=subprocess.PIPE, universal_newlines=True,
                              timeout=120)

    def _write_input(self, contents: bytes) -> str:
        path = os.path.join(self.dir, "country.mmdb")
        with open(path, 'wb') as f:
            f.write(contents)
        return path

    def test_release(self) -> None:
        """Test that a release prints the tag line and writes every output."""
        proc = self._run("release", "-i", self._write_input(self._source()))
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertEqual(proc.stdout, "::set-output name=tag::ipinfo\n")
        self.assertIn("[INFO] Wrote geoip.db", proc.stderr)
        self.assertIn("[WARNING] Skipped 2 networks", proc.stderr)
        self.assertEqual(sorted(os.listdir(self.dir)),
                         ["country.mmdb", "geoip-cn.db", "geoip.db", "rule-set"])
        self.assertEqual(sorted(os.listdir(os.path.join(self.dir, "rule-set"))),
                         ["geoip-cn.srs", "geoip-eu.srs", "geoip-jp.srs", "geoip-us.srs"])

        proc = self._run("rule-set", os.path.join("rule-set", "geoip-cn.srs"))
        self.assertEqual(proc.returncode, 0, proc.stderr)
        self.assertEqual(proc.stdout.split(), ["1.0.1.0/24", "1.0.8.0/21", "2001:250::/32"])

    def test_malformed_input(self) -> None:
        """Test that a broken source exits non-zero without a tag line."""
        proc = self._run("release", "-i", self._write_input(b"this is not a database"))
        self.assertEqual(proc.returncode, 1)
        self.assertEqual(proc.stdout, "")
        self.assertTrue(proc.stderr.startswith("[ERROR] Database '"), proc.stderr)
        self.assertFalse(os.path.exists(os.path.join(self.dir, "geoip.db")))

    def test_missing_token(self) -> None:
        """Test that a download without a token exits non-zero before any request."""
        proc = self._run("release")
        self.assertEqual(proc.returncode, 1)
        self.assertEqual(proc.stdout, "")
        self.assertIn("[ERROR] No ipinfo token provided", proc.stderr)


if __name__ == '__main__':
    unittest.main()
