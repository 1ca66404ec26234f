# This file is part of webdavfs.
#
# Developed for the LSST Data Management System.
# This product includes software developed by the LSST Project
# (https://www.lsst.org).
# See the COPYRIGHT file at the top-level directory of this distribution
# for details of code ownership.
#
# Use of this source code is governed by a 3-clause BSD-style
# license that can be found in the LICENSE file.

import http.client
import io
import os
import shutil
import tempfile
import threading
import unittest

from urllib3 import PoolManager, ProxyManager
from urllib3.exceptions import (
    NameResolutionError,
    NewConnectionError,
    ProtocolError,
    ProxyError,
    ReadTimeoutError,
    SSLError,
)
from urllib3.response import HTTPResponse

from webdavfs._transport import (
    LARGE_UPLOAD_SIZE,
    LARGE_UPLOAD_TIMEOUT,
    MAX_REDIRECTS,
    DavRequest,
    DavSession,
    SupportsFileUpload,
    TransportErrorKind,
    TransportRuntime,
    TransportStats,
    classify_transport_error,
)
from webdavfs._upload import BufferUploadSource
from webdavfs.davutils import DavConfig

HTTPS_URL = "https://u1.your-storagebox.de/data/file"
HTTP_URL = "http://host.example.org/data/file"


def http_response(
    status: int, body: bytes = b"", headers: dict[str, str] | None = None, reason: str | None = None
) -> HTTPResponse:
    return HTTPResponse(
        body=io.BytesIO(body),
        headers=headers or {},
        status=status,
        reason=reason,
        version=11,
        preload_content=False,
    )


class FakePoolManager:
    """Pool manager double which returns or raises the given outcomes in
    order, consuming the body of each request.
    """

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls: list[dict] = []
        self.cleared = False

    def urlopen(self, method, url, body=None, headers=None, **kwargs):
        self.calls.append(
            {
                "method": method,
                "url": url,
                "headers": dict(headers or {}),
                "body": body,
                "sent": body.read() if body is not None else None,
                **kwargs,
            }
        )
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    def clear(self):
        self.cleared = True


class ClassifyTransportErrorTestCase(unittest.TestCase):
    """Test the mapping of network exceptions to failure kinds."""

    def test_classify(self):
        for error, kind in (
            (ProxyError("proxy", OSError("unreachable")), TransportErrorKind.RESOLVE_PROXY),
            (NameResolutionError("host", None, OSError("no such host")), TransportErrorKind.RESOLVE_HOST),
            (NewConnectionError(None, "refused"), TransportErrorKind.CONNECT),
            (ReadTimeoutError(None, HTTPS_URL, "read timed out"), TransportErrorKind.TIMEOUT),
            (TimeoutError("timed out"), TransportErrorKind.TIMEOUT),
            (SSLError("certificate verify failed"), TransportErrorKind.TLS),
            (
                ProtocolError("Connection aborted.", http.client.RemoteDisconnected("closed")),
                TransportErrorKind.EMPTY_REPLY,
            ),
            (ProtocolError("Connection aborted.", BrokenPipeError()), TransportErrorKind.SEND),
            (ProtocolError("Connection broken.", ConnectionResetError()), TransportErrorKind.RECEIVE),
            (http.client.IncompleteRead(b"partial", 10), TransportErrorKind.PARTIAL),
            (BrokenPipeError(), TransportErrorKind.SEND),
            (ConnectionRefusedError(), TransportErrorKind.CONNECT),
            (ConnectionResetError(), TransportErrorKind.RECEIVE),
            (OSError("something else"), TransportErrorKind.OTHER),
        ):
            with self.subTest(error=error):
                self.assertEqual(classify_transport_error(error), kind)


class DavRequestTestCase(unittest.TestCase):
    """Test requests."""

    def test_body_or_source(self):
        request = DavRequest("put", HTTP_URL, body=b"data")
        self.assertEqual(request.method, "PUT")
        self.assertEqual(request.body, b"data")
        self.assertIsNone(request.source)

        source = BufferUploadSource(b"streamed")
        request.set_upload_source(source)
        self.assertIsNone(request.body)
        self.assertIs(request.source, source)

        request.set_body(b"again")
        self.assertEqual(request.body, b"again")
        self.assertIsNone(request.source)

    def test_full_url(self):
        self.assertEqual(DavRequest("GET", HTTP_URL).full_url, HTTP_URL)
        request = DavRequest("GET", HTTP_URL, params={"a b": "c/d", "e": "f"})
        self.assertEqual(request.full_url, f"{HTTP_URL}?a%20b=c%2Fd&e=f")
        request = DavRequest("GET", f"{HTTP_URL}?x=1", params={"y": "2"})
        self.assertEqual(request.full_url, f"{HTTP_URL}?x=1&y=2")


class TransportStatsTestCase(unittest.TestCase):
    """Test the request counters shared by sessions."""

    def test_shared_by_threads(self):
        stats = TransportStats()

        def record():
            for _ in range(1000):
                stats.record("PUT", 3, 1)

        threads = [threading.Thread(target=record) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(stats.calls("PUT"), 4000)
        self.assertEqual(stats.calls("GET"), 0)
        self.assertEqual(stats.total_calls, 4000)
        self.assertEqual(stats.bytes_sent, 12000)
        self.assertEqual(stats.bytes_received, 4000)


class TransportRuntimeTestCase(unittest.TestCase):
    """Test the process-wide transport state."""

    def setUp(self):
        TransportRuntime()._destroy()
        self.tmpdir = tempfile.mkdtemp(prefix="webdavfs-runtime-test-")

    def tearDown(self):
        TransportRuntime()._destroy()
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_refcount(self):
        runtime = TransportRuntime()
        self.assertIs(runtime, TransportRuntime())
        self.assertEqual(runtime.refcount, 0)

        sessions = [DavSession(DavConfig(), pool_manager=FakePoolManager()) for _ in range(3)]
        self.assertEqual(runtime.refcount, 3)

        for session in sessions:
            session.close()
        self.assertEqual(runtime.refcount, 0)

        # Closing twice releases once.
        sessions[0].close()
        runtime.release()
        self.assertEqual(runtime.refcount, 0)

    def test_ssl_context(self):
        runtime = TransportRuntime()
        context = runtime.ssl_context(True)
        self.assertIs(runtime.ssl_context(True), context)
        self.assertIsNot(runtime.ssl_context(False), context)

        # The context outlives the release of the last session.
        with DavSession(DavConfig(), pool_manager=FakePoolManager()):
            pass
        self.assertIs(runtime.ssl_context(True), context)

        with self.assertRaises(FileNotFoundError):
            runtime.ssl_context(True, os.path.join(self.tmpdir, "missing"))

    def test_failed_session_not_counted(self):
        runtime = TransportRuntime()
        config = DavConfig({"trusted_authorities": os.path.join(self.tmpdir, "missing")})
        with self.assertRaises(FileNotFoundError):
            DavSession(config)
        self.assertEqual(runtime.refcount, 0)

        with DavSession(DavConfig(), pool_manager=FakePoolManager()):
            self.assertEqual(runtime.refcount, 1)
        self.assertEqual(runtime.refcount, 0)


class DavSessionTestCase(unittest.TestCase):
    """Test sending requests via a session."""

    def tearDown(self):
        TransportRuntime()._destroy()

    def test_pool_manager(self):
        with DavSession(DavConfig()) as session:
            self.assertIsInstance(session._pool_manager, PoolManager)
            self.assertNotIsInstance(session._pool_manager, ProxyManager)

        config = DavConfig({"proxy_host": "proxy.example.org", "proxy_port": 3128, "proxy_username": "p"})
        with DavSession(config) as session:
            self.assertIsInstance(session._pool_manager, ProxyManager)
            self.assertEqual(session._pool_manager.proxy.host, "proxy.example.org")
            self.assertEqual(session._pool_manager.proxy.port, 3128)
            self.assertIn("proxy-authorization", session._pool_manager.proxy_headers)

    def test_get(self):
        pool = FakePoolManager(http_response(200, b"contents", {"Content-Length": "8"}, "OK"))
        stats = TransportStats()
        with DavSession(DavConfig(), stats=stats, pool_manager=pool) as session:
            resp = session.get(HTTP_URL, headers={"X-Custom": "1"})

        self.assertFalse(resp.failed)
        self.assertEqual(resp.status, 200)
        self.assertEqual(resp.reason, "OK")
        self.assertEqual(resp.body, b"contents")
        self.assertEqual(resp.text(), "contents")
        self.assertEqual(resp.url, HTTP_URL)
        self.assertEqual(resp.headers["content-length"], "8")
        self.assertEqual(len(resp.hops), 1)
        self.assertEqual(resp.hops[0].status_line, "HTTP/1.1 200 OK")

        call = pool.calls[0]
        self.assertEqual(call["method"], "GET")
        self.assertFalse(call["redirect"])
        self.assertFalse(call["retries"])
        self.assertFalse(call["preload_content"])
        self.assertEqual(call["headers"]["X-Custom"], "1")
        self.assertIn("accept-encoding", call["headers"])
        self.assertNotIn("Connection", call["headers"])
        self.assertTrue(pool.cleared)

        self.assertEqual(stats.calls("GET"), 1)
        self.assertEqual(stats.total_calls, 1)
        self.assertEqual(stats.bytes_received, 8)

    def test_keep_alive_disabled(self):
        pool = FakePoolManager(http_response(200))
        with DavSession(DavConfig({"keep_alive": False}), pool_manager=pool) as session:
            session.head(HTTP_URL)

        self.assertEqual(pool.calls[0]["headers"]["Connection"], "close")

    def test_bearer_token(self):
        pool = FakePoolManager(http_response(200), http_response(200))
        with DavSession(DavConfig({"token": "ABCDE"}), pool_manager=pool) as session:
            session.get(HTTPS_URL)
            session.get(HTTP_URL)

        self.assertEqual(pool.calls[0]["headers"]["Authorization"], "Bearer ABCDE")
        self.assertNotIn("Authorization", pool.calls[1]["headers"])

    def test_redirects(self):
        pool = FakePoolManager(
            http_response(
                307, headers={"Location": "https://other.example.org/x"}, reason="Temporary Redirect"
            ),
            http_response(302, headers={"Location": "/final"}, reason="Found"),
            http_response(201, reason="Created"),
        )
        stats = TransportStats()
        with DavSession(DavConfig(), stats=stats, pool_manager=pool) as session:
            resp = session.put(HTTPS_URL, body=b"0123456789")

        self.assertEqual(resp.status, 201)
        self.assertEqual(resp.url, "https://other.example.org/final")
        self.assertEqual(
            [hop.status_line for hop in resp.hops],
            ["HTTP/1.1 307 Temporary Redirect", "HTTP/1.1 302 Found", "HTTP/1.1 201 Created"],
        )
        self.assertEqual([call["method"] for call in pool.calls], ["PUT", "PUT", "PUT"])

        # The body is sent again to each location.
        self.assertEqual([call["sent"] for call in pool.calls], [b"0123456789"] * 3)
        self.assertEqual(stats.bytes_sent, 30)
        self.assertEqual(stats.calls("PUT"), 1)

    def test_redirect_see_other(self):
        pool = FakePoolManager(
            http_response(303, headers={"Location": "/result"}, reason="See Other"),
            http_response(200, b"done"),
        )
        with DavSession(DavConfig(), pool_manager=pool) as session:
            resp = session.put(HTTP_URL, headers={"Content-Type": "text/plain"}, body=b"data")

        self.assertEqual(resp.body, b"done")
        self.assertEqual(pool.calls[1]["method"], "GET")
        self.assertEqual(pool.calls[1]["url"], "http://host.example.org/result")
        self.assertIsNone(pool.calls[1]["body"])
        self.assertNotIn("Content-Length", pool.calls[1]["headers"])
        self.assertNotIn("Content-Type", pool.calls[1]["headers"])

    def test_too_many_redirects(self):
        pool = FakePoolManager(
            *[http_response(302, headers={"Location": "/loop"}) for _ in range(MAX_REDIRECTS + 1)]
        )
        with DavSession(DavConfig(), pool_manager=pool) as session:
            resp = session.get(HTTP_URL)

        self.assertTrue(resp.failed)
        self.assertEqual(resp.status, 0)
        self.assertEqual(resp.error_kind, TransportErrorKind.TOO_MANY_REDIRECTS)
        self.assertEqual(len(resp.hops), MAX_REDIRECTS + 1)

    def test_transport_error(self):
        pool = FakePoolManager(ReadTimeoutError(None, HTTP_URL, "Read timed out."))
        stats = TransportStats()
        with DavSession(DavConfig(), stats=stats, pool_manager=pool) as session:
            resp = session.get(HTTP_URL)

        self.assertTrue(resp.failed)
        self.assertEqual(resp.status, 0)
        self.assertEqual(resp.body, b"")
        self.assertEqual(resp.error_kind, TransportErrorKind.TIMEOUT)
        self.assertTrue(resp.error.startswith(TransportErrorKind.TIMEOUT.value))
        self.assertEqual(stats.calls("GET"), 1)

    def test_transport_error_after_redirect(self):
        pool = FakePoolManager(
            http_response(302, headers={"Location": "/moved"}, reason="Found"),
            ProtocolError("Connection aborted.", ConnectionResetError()),
        )
        with DavSession(DavConfig(), pool_manager=pool) as session:
            resp = session.get(HTTP_URL)

        self.assertEqual(resp.status, 0)
        self.assertEqual(resp.error, "HTTP/1.1 302 Found")
        self.assertEqual(resp.error_kind, TransportErrorKind.RECEIVE)

    def test_large_upload(self):
        pool = FakePoolManager(http_response(201), http_response(201))
        headers = {"Expect": "100-continue"}
        with DavSession(DavConfig({"timeout": 10}), pool_manager=pool) as session:
            session.put(HTTP_URL, headers=headers, body=b"small")
            request = DavRequest("PUT", HTTP_URL, headers=headers)
            request.set_upload_source(BufferUploadSource(bytes(LARGE_UPLOAD_SIZE + 1)))
            session.execute(request)

        small, large = pool.calls
        self.assertEqual(small["headers"]["Expect"], "100-continue")
        self.assertEqual(small["headers"]["Content-Length"], "5")
        self.assertEqual(small["timeout"].read_timeout, 10)

        self.assertNotIn("Expect", large["headers"])
        self.assertEqual(large["headers"]["Content-Length"], str(LARGE_UPLOAD_SIZE + 1))
        self.assertEqual(large["timeout"].read_timeout, LARGE_UPLOAD_TIMEOUT)
        self.assertEqual(large["timeout"].connect_timeout, 10)

    def test_attached_upload_source(self):
        pool = FakePoolManager(http_response(201), http_response(201), http_response(200))
        source = BufferUploadSource(b"from the source")
        with DavSession(DavConfig(), pool_manager=pool) as session:
            self.assertIsInstance(session, SupportsFileUpload)
            session.attach_upload_source(source)
            session.put(HTTP_URL)
            session.put(HTTP_URL, body=b"explicit")
            session.detach_upload_source()
            session.get(HTTP_URL)

        self.assertEqual(pool.calls[0]["sent"], b"from the source")
        self.assertEqual(pool.calls[1]["sent"], b"explicit")
        self.assertIsNone(pool.calls[2]["body"])

    def test_debug(self):
        pool = FakePoolManager(http_response(200, headers={"Server": "test"}, reason="OK"))
        config = DavConfig({"debug": True, "token": "SECRET"})
        with DavSession(config, pool_manager=pool) as session:
            with self.assertLogs("webdavfs", level="DEBUG") as cm:
                session.get(HTTPS_URL + "?authz=SECRET")

        output = "\n".join(cm.output)
        self.assertIn("HTTP/1.1 200 OK", output)
        self.assertIn("Server: test", output)
        self.assertNotIn("SECRET", output)

    def test_closed(self):
        session = DavSession(DavConfig(), pool_manager=FakePoolManager())
        session.close()
        with self.assertRaises(ValueError):
            session.get(HTTP_URL)


if __name__ == "__main__":
    unittest.main()
