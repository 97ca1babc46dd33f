# Copyright (c) 2022 Pieter Wuille
# Distributed under the MIT software license, see the accompanying
# file LICENSE or http://www.opensource.org/licenses/mit-license.php.

import http.client
import http.server
import os
import sys
import threading
import unittest
import unittest.mock
import urllib.error
import urllib.parse
import urllib.request

from errors import FetchError

COUNTRY_URL = "https://ipinfo.io/data/free/country.mmdb?token={0}"


class IPinfoDownloader:
    """Downloads the free ipinfo country database with an access token."""

    def __init__(self, token, url=COUNTRY_URL, timeout=300):
        if not token:
            raise FetchError("No ipinfo token provided (set IPINFO_TOKEN or pass --token).")
        self.token = token
        self.url = url
        self.timeout = timeout

    def download(self):
        link = self.url.format(urllib.parse.quote(self.token, safe=''))
        print("[INFO] Downloading %s" % self.url.format("***"), file=sys.stderr)
        try:
            with urllib.request.urlopen(link, timeout=self.timeout) as response:
                length = response.getheader('content-length')
                blocksize = max(4096, int(length) // 1000) if length else 65536
                chunks = []
                while True:
                    buf = response.read(blocksize)
                    if not buf:
                        break
                    chunks.append(buf)
        except urllib.error.HTTPError as err:
            raise FetchError("Download failed with HTTP status %i: %s" % (err.code, err.reason)) from err
        except (urllib.error.URLError, http.client.HTTPException, OSError) as err:
            raise FetchError("Download failed: %s" % err) from err
        contents = b"".join(chunks)
        if length and len(contents) != int(length):
            raise FetchError("Download truncated: got %i of %s bytes" % (len(contents), length))
        print("[INFO] Downloaded %.2f MiB" % (len(contents) / 1024 / 1024), file=sys.stderr)
        return contents


class _CountryHandler(http.server.BaseHTTPRequestHandler):
    """Serves /<token> paths: ok, short (truncated body), anything else is 404."""

    def do_GET(self):
        if self.path == "/ok":
            self.send_response(200)
            self.send_header("Content-Length", "5")
            self.end_headers()
            self.wfile.write(b"hello")
        elif self.path == "/short":
            self.send_response(200)
            self.send_header("Content-Length", "100")
            self.end_headers()
            self.wfile.write(b"0123456789")
            self.close_connection = True
        else:
            self.send_error(404, "Not Found")

    def log_message(self, format, *args):
        pass


class TestIPinfoDownloader(unittest.TestCase):
    """Unit tests for this module."""

    def setUp(self):
        no_proxy = unittest.mock.patch.dict(os.environ, {"no_proxy": "*", "NO_PROXY": "*"})
        no_proxy.start()
        self.addCleanup(no_proxy.stop)
        self.server = http.server.HTTPServer(("127.0.0.1", 0), _CountryHandler)
        thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        thread.start()
        self.addCleanup(thread.join)
        self.addCleanup(self.server.server_close)
        self.addCleanup(self.server.shutdown)
        self.url = "http://127.0.0.1:%i/{0}" % self.server.server_address[1]

    def test_download(self):
        """Test that a complete response is returned as bytes."""
        self.assertEqual(IPinfoDownloader("ok", url=self.url, timeout=10).download(), b"hello")

    def test_http_error(self):
        """Test that a non-2xx status raises FetchError with the status code."""
        with self.assertRaisesRegex(FetchError, "HTTP status 404"):
            IPinfoDownloader("missing", url=self.url, timeout=10).download()

    def test_truncated(self):
        """Test that a body shorter than its content-length raises FetchError."""
        with self.assertRaises(FetchError):
            IPinfoDownloader("short", url=self.url, timeout=10).download()

    def test_connection_refused(self):
        """Test that a transport failure raises FetchError."""
        port = self.server.server_address[1]
        self.server.shutdown()
        self.server.server_close()
        with self.assertRaisesRegex(FetchError, "Download failed"):
            IPinfoDownloader("ok", url="http://127.0.0.1:%i/{0}" % port, timeout=10).download()

    def test_missing_token(self):
        """Test that an empty token is rejected before any request."""
        for token in (None, ""):
            with self.assertRaises(FetchError):
                IPinfoDownloader(token, url=self.url)


if __name__ == '__main__':
    unittest.main()
