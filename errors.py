# Copyright (c) 2022 Pieter Wuille
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

"""
Exceptions raised by the geoip transcoding pipeline.

Every stage raises immediately; geoip-tool.py reports the message and exits
with a non-zero status.
"""


class GeoIPError(Exception):
    """Base class for all pipeline failures."""


class FetchError(GeoIPError):
    """The source database could not be downloaded."""


class MalformedSourceError(GeoIPError):
    """Input bytes are not a readable MaxMind DB file."""


class ForeignDatabaseError(GeoIPError):
    """An existing output file does not carry the expected database type."""


class InsertionError(GeoIPError, ValueError):
    """A network cannot be inserted into a tree of the configured IP version."""


class CapacityError(GeoIPError):
    """The tree does not fit in the configured record size."""


class WriteError(GeoIPError):
    """An output file could not be written."""
