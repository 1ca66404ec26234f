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

import io
import os
import shutil
import tempfile
import unittest
import unittest.mock

from _davtestutils import FakeSession, make_response, make_transport_error, multistatus

from webdavfs import DavFileSystem, TransportStats
from webdavfs.dav import CONFIG_ENV_VAR
from webdavfs._transport import DavRequest
from webdavfs.davutils import DavConfigPool, DavCredentials
from webdavfs.errors import (
    DavAuthenticationError,
    DavForbiddenError,
    DavNotFoundError,
    DavProtocolError,
    DavTransportError,
    NonSequentialWriteError,
    StorageExhaustedError,
)

BASE = "https://u1.your-storagebox.de"


def ranged(contents: bytes):
    def respond(request: DavRequest):
        start, end = request.headers["Range"].removeprefix("bytes=").split("-")
        return make_response(206, contents[int(start) : int(end) + 1])

    return respond


class DavFileSystemTestCase(unittest.TestCase):
    """Test the file system operations."""

    def setUp(self):
        self.session = FakeSession()
        self.sleeps: list[float] = []
        self.stats = TransportStats()
        self.factory_calls = []

        def factory(config, stats):
            self.factory_calls.append((config, stats))
            return self.session

        self.fs = DavFileSystem(
            config_pool=DavConfigPool(), stats=self.stats, session_factory=factory, sleep=self.sleeps.append
        )

    def tearDown(self):
        DavConfigPool._destroy(DavConfigPool)

    def _urls(self, method: str) -> list[str]:
        return [r.url for r in self.session.sent(method)]

    def test_can_handle(self):
        self.assertTrue(self.fs.can_handle("storagebox://u1/a"))
        self.assertTrue(self.fs.can_handle("webdavs://host/a"))
        self.assertFalse(self.fs.can_handle("s3://bucket/a"))
        self.assertFalse(self.fs.can_handle("https://example.org/a"))

    def test_session_per_operation(self):
        self.session.add("HEAD", f"{BASE}/a", make_response(404))
        self.assertFalse(self.fs.exists("storagebox://u1/a"))
        self.assertFalse(self.fs.exists("storagebox://u1/a"))
        self.assertEqual(len(self.factory_calls), 2)
        self.assertIs(self.factory_calls[0][1], self.stats)
        self.assertEqual(self.session.closed, 2)

    def test_create_directory(self):
        self.session.add("MKCOL", f"{BASE}/a/", make_response(201), make_response(405))
        self.fs.create_directory("storagebox://u1/a")

        # An existing directory is not an error.
        self.fs.create_directory("storagebox://u1/a/")
        self.assertEqual(self._urls("MKCOL"), [f"{BASE}/a/", f"{BASE}/a/"])

    def test_create_directory_missing_parent(self):
        self.session.add("MKCOL", f"{BASE}/a/b/c/", make_response(409), make_response(201))
        self.session.add("MKCOL", f"{BASE}/a/", make_response(405))
        self.fs.create_directory("storagebox://u1/a/b/c")

        # Failures while creating the ancestors are ignored.
        self.assertEqual(
            self._urls("MKCOL"), [f"{BASE}/a/b/c/", f"{BASE}/a/", f"{BASE}/a/b/", f"{BASE}/a/b/c/"]
        )

    def test_create_directory_errors(self):
        self.session.add("MKCOL", f"{BASE}/full/", make_response(507))
        with self.assertRaises(StorageExhaustedError):
            self.fs.create_directory("storagebox://u1/full")

        self.session.add("MKCOL", f"{BASE}/x/y/", make_response(404))
        self.session.add("MKCOL", f"{BASE}/x/", make_response(507))
        with self.assertRaises(StorageExhaustedError):
            self.fs.create_directory("storagebox://u1/x/y")

        # The directory is not retried once the server is full.
        self.assertEqual(self._urls("MKCOL")[-2:], [f"{BASE}/x/y/", f"{BASE}/x/"])

        self.session.add("MKCOL", f"{BASE}/forbidden/", make_response(403))
        with self.assertRaises(DavForbiddenError):
            self.fs.create_directory("storagebox://u1/forbidden")

    def test_create_directory_recursive(self):
        self.session.add("MKCOL", f"{BASE}/x/", make_response(405))
        self.session.add("MKCOL", f"{BASE}/x/y/", make_response(201))
        self.session.add("MKCOL", f"{BASE}/x/y/z/", make_response(201))
        self.fs.create_directory_recursive("storagebox://u1/x/y/z")
        self.assertEqual(self._urls("MKCOL"), [f"{BASE}/x/", f"{BASE}/x/y/", f"{BASE}/x/y/z/"])

    def test_create_directory_recursive_full(self):
        self.session.add("MKCOL", f"{BASE}/x/", make_response(201))
        self.session.add("MKCOL", f"{BASE}/x/y/", make_response(507))
        with self.assertRaises(StorageExhaustedError) as cm:
            self.fs.create_directory_recursive("storagebox://u1/x/y/z")

        self.assertEqual(self._urls("MKCOL"), [f"{BASE}/x/", f"{BASE}/x/y/"])
        self.assertIn("storagebox://u1/x/y", str(cm.exception))

    def test_exists(self):
        self.session.add("HEAD", f"{BASE}/file", make_response(200, headers={"Content-Length": "3"}))
        self.assertTrue(self.fs.exists("storagebox://u1/file"))
        self.assertFalse(self.fs.is_dir("storagebox://u1/file"))

        self.session.add("HEAD", f"{BASE}/dir", make_response(200))
        self.session.add("PROPFIND", f"{BASE}/dir/", make_response(207, multistatus("/dir/")))
        self.assertFalse(self.fs.exists("storagebox://u1/dir"))
        self.assertTrue(self.fs.is_dir("storagebox://u1/dir"))
        self.assertEqual(self.session.sent("PROPFIND")[-1].headers["Depth"], "0")

        self.assertFalse(self.fs.exists("storagebox://u1/missing"))
        self.assertFalse(self.fs.is_dir("storagebox://u1/missing"))

    def test_exists_retried(self):
        self.session.add("HEAD", f"{BASE}/file", make_transport_error())
        self.assertFalse(self.fs.exists("storagebox://u1/file"))

        # The default configuration allows 3 retries.
        self.assertEqual(len(self.session.sent("HEAD")), 4)
        self.assertEqual(len(self.sleeps), 3)

    def test_file_size(self):
        self.session.add("HEAD", f"{BASE}/file", make_response(200, headers={"Content-Length": "42"}))
        self.assertEqual(self.fs.file_size("storagebox://u1/file"), 42)

        self.session.add("HEAD", f"{BASE}/nolength", make_response(200))
        self.session.add(
            "PROPFIND",
            f"{BASE}/nolength",
            make_response(
                207,
                """<D:multistatus xmlns:D="DAV:"><D:response><D:href>/nolength</D:href>"""
                """<D:propstat><D:prop><D:getcontentlength>1234</D:getcontentlength></D:prop>"""
                """</D:propstat></D:response></D:multistatus>""",
            ),
        )
        self.assertEqual(self.fs.file_size("storagebox://u1/nolength"), 1234)

        with self.assertRaises(DavNotFoundError):
            self.fs.file_size("storagebox://u1/missing")

    def test_remove(self):
        self.session.add("DELETE", f"{BASE}/file", make_response(204))
        self.session.add("DELETE", f"{BASE}/dir/", make_response(204))
        self.fs.remove_file("storagebox://u1/file")
        self.fs.remove_directory("storagebox://u1/dir")
        self.assertEqual(self._urls("DELETE"), [f"{BASE}/file", f"{BASE}/dir/"])

        with self.assertRaises(DavNotFoundError) as cm:
            self.fs.remove_file("storagebox://u1/missing")
        self.assertIsInstance(cm.exception, FileNotFoundError)
        self.assertIn("storagebox://u1/missing", str(cm.exception))

    def test_move(self):
        self.session.add("MOVE", f"{BASE}/a", make_response(201))
        self.fs.move_file("storagebox://u1/a", "storagebox://u1/dir/b")
        request = self.session.sent("MOVE")[0]
        self.assertEqual(request.headers["Destination"], f"{BASE}/dir/b")
        self.assertEqual(request.headers["Overwrite"], "T")

        self.session.add("MOVE", f"{BASE}/c", make_response(412, reason="Precondition Failed"))
        with self.assertRaises(DavProtocolError) as cm:
            self.fs.move_file("storagebox://u1/c", "storagebox://u1/d")
        self.assertEqual(cm.exception.status, 412)

    def test_set_property(self):
        self.session.add("PROPPATCH", f"{BASE}/file", make_response(207))
        self.fs.set_property("storagebox://u1/file", "checksum", "abc")
        self.assertIn(b"<C:checksum>abc</C:checksum>", self.session.sent("PROPPATCH")[0].body)

        with self.assertRaises(DavNotFoundError):
            self.fs.set_property("storagebox://u1/missing", "checksum", "abc")

    def test_authentication_error(self):
        self.session.add("DELETE", f"{BASE}/file", make_response(401, reason="Unauthorized"))
        with self.assertRaises(DavAuthenticationError) as cm:
            self.fs.remove_file("storagebox://u1/file")

        self.assertIsInstance(cm.exception, PermissionError)
        message = str(cm.exception)
        self.assertIn("HTTP 401 Unauthorized", message)
        self.assertIn("Authentication failed", message)

    def test_transport_error(self):
        self.session.add("DELETE", f"{BASE}/file", make_transport_error())
        with self.assertRaises(DavTransportError):
            self.fs.remove_file("storagebox://u1/file")

    def test_credentials(self):
        fs = DavFileSystem(
            config_pool=DavConfigPool(),
            credentials=lambda url: (
                DavCredentials("u1", "secret") if url.startswith("storagebox://") else None
            ),
            session_factory=lambda config, stats: self.session,
        )
        fs.exists("storagebox://u1/file")
        fs.exists("webdav://host/file")
        self.assertTrue(self.session.requests[0].headers["Authorization"].startswith("Basic "))
        self.assertNotIn("Authorization", self.session.requests[1].headers)

    def test_open_read(self):
        contents = b"line one\nline two\n"
        self.session.add(
            "HEAD", f"{BASE}/file.txt", make_response(200, headers={"Content-Length": str(len(contents))})
        )
        self.session.add("GET", f"{BASE}/file.txt", ranged(contents))

        handle = self.fs.open("storagebox://u1/file.txt")
        self.assertEqual(handle.mode, "rb")
        self.assertEqual(self.fs.read(handle, 4, 5), b"one\n")
        self.assertEqual(handle.read(), b"line two\n")
        self.fs.close(handle)
        self.assertTrue(handle.closed)

        with self.fs.open("storagebox://u1/file.txt", "r", encoding="utf-8") as f:
            self.assertIsInstance(f, io.TextIOWrapper)
            self.assertEqual(f.readlines(), ["line one\n", "line two\n"])
            self.assertEqual(self.fs.read(f, 3, 0), b"lin")

    def test_open_missing(self):
        with self.assertRaises(DavNotFoundError):
            self.fs.open("storagebox://u1/missing", "rb")

        # The session is closed when opening fails.
        self.assertEqual(self.session.closed, 1)

    def test_open_write(self):
        self.session.add("PUT", f"{BASE}/out.bin", make_response(201))
        handle = self.fs.open("storagebox://u1/out.bin", "wb")
        self.assertEqual(self.fs.write(handle, b"abc", 0), 3)
        self.assertEqual(self.fs.write(handle, b"def", 3), 3)
        with self.assertRaises(NonSequentialWriteError):
            self.fs.write(handle, b"x", 10)

        self.fs.sync(handle)
        self.assertEqual(self.session.sent("PUT")[0].body, b"abcdef")
        self.fs.close(handle)
        self.assertEqual(len(self.session.sent("PUT")), 1)

    def test_open_write_text(self):
        self.session.add("PUT", f"{BASE}/out.txt", make_response(201))
        with self.fs.open("storagebox://u1/out.txt", "w", encoding="utf-8") as f:
            f.write("première ligne\n")
            self.fs.sync(f)
            self.assertEqual(self.session.sent("PUT")[0].body, "première ligne\n".encode())

    def test_open_write_missing_parent(self):
        self.session.add("PUT", f"{BASE}/new/dir/out.bin", make_response(409), make_response(201))
        with self.fs.open("storagebox://u1/new/dir/out.bin", "wb") as handle:
            handle.write(b"data")

        self.assertEqual(self._urls("MKCOL"), [f"{BASE}/new/", f"{BASE}/new/dir/"])
        self.assertEqual(len(self.session.sent("PUT")), 2)

    def test_open_modes(self):
        for mode in ("a", "ab", "r+", "w+b", "x", "xb"):
            with self.subTest(mode=mode):
                with self.assertRaises(io.UnsupportedOperation):
                    self.fs.open("storagebox://u1/file", mode)

        for mode in ("", "rw", "rbb", "q", "bt"):
            with self.subTest(mode=mode):
                with self.assertRaises(ValueError):
                    self.fs.open("storagebox://u1/file", mode)

        self.assertEqual(self.session.requests, [])

    def test_glob_and_list(self):
        self.session.add(
            "PROPFIND",
            f"{BASE}/data/",
            make_response(207, multistatus("/data/", "/data/a.csv", "/data/sub/")),
        )
        self.session.add(
            "PROPFIND", f"{BASE}/data/sub/", make_response(207, multistatus("/data/sub/", "/data/sub/b"))
        )
        self.assertEqual(self.fs.glob("storagebox://u1/data/*.csv"), ["storagebox://u1/data/a.csv"])

        found = []
        self.assertTrue(
            self.fs.list_files("storagebox://u1/data/", lambda url, is_dir: found.append((url, is_dir)))
        )
        self.assertEqual(
            found, [("storagebox://u1/data/a.csv", False), ("storagebox://u1/data/sub/b", False)]
        )

        self.assertFalse(self.fs.list_files("storagebox://u1/empty", lambda url, is_dir: None))


class DavFileSystemConfigTestCase(unittest.TestCase):
    """Test the endpoint configuration shared by file systems."""

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp(prefix="webdavfs-config-test-")
        self.config_path = os.path.join(self.tmpdir, "config.yaml")
        with open(self.config_path, "w") as f:
            f.write(
                """
- base_url: "storagebox://u1/"
  retries: 7
  username: "u1"
  password: "secret"
"""
            )

        self.session = FakeSession()
        self.configs = []

        def factory(config, stats):
            self.configs.append(config)
            return self.session

        self.factory = factory
        DavConfigPool._destroy(DavConfigPool)

    def tearDown(self):
        DavConfigPool._destroy(DavConfigPool)
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def test_config_survives_new_file_system(self):
        with unittest.mock.patch.dict(os.environ, {CONFIG_ENV_VAR: self.config_path}):
            first = DavFileSystem(session_factory=self.factory)

        # A file system created later, even without a configuration file,
        # must not reset the settings the first one relies on.
        with unittest.mock.patch.dict(os.environ, {}, clear=True):
            second = DavFileSystem(session_factory=self.factory)
            explicit = DavFileSystem(config_pool=DavConfigPool(CONFIG_ENV_VAR), session_factory=self.factory)

        for fs in (first, second, explicit):
            self.assertFalse(fs.exists("storagebox://u1/file"))

        self.assertEqual([config.retries for config in self.configs], [7, 7, 7])
        for request in self.session.requests:
            self.assertTrue(request.headers["Authorization"].startswith("Basic "))


if __name__ == "__main__":
    unittest.main()
