#!/usr/bin/env python
"""
FTP transport tests
===================

No server is started: the transport is given a connection factory that
returns ``MagicMock`` connections, and the tests assert the FTP commands
issued and the error translation applied.
"""

import ftplib
import socket
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from tempfile import TemporaryDirectory
from unittest import mock

from syncbox.config import FtpTarget
from syncbox.errors import TransportError, TransportErrorKind
from syncbox.transport import FtpTransport, RemoteEntry, create_transport
from syncbox.transport.ftp import open_connection, translate_ftp_error


def _fake_storbinary(received):
    """storbinary replacement that drains the file through the callback"""
    def storbinary(cmd, fp, blocksize=8192, callback=None):
        data = fp.read()
        received[cmd] = data
        if callback:
            callback(data)
        return "226 Transfer complete"
    return storbinary


class FtpTestCase(unittest.TestCase):

    def setUp(self):
        self._tmp = TemporaryDirectory()
        self.local = Path(self._tmp.name)
        self.target = FtpTarget("ftp.example.com", "me", "secret", "/backup")
        self.conn = mock.MagicMock(name="ftp")
        self.factory = mock.MagicMock(return_value=self.conn)
        self.transport = FtpTransport(self.target, pool_size=1, connection_factory=self.factory)

    def tearDown(self):
        self.transport.close()
        self._tmp.cleanup()

    def _source(self, name: str, data: bytes) -> Path:
        path = self.local / name
        path.write_bytes(data)
        return path


class TestFtpUpload(FtpTestCase):
    """STOR and directory creation"""

    def test_upload_creates_parents_once(self):
        received = {}
        self.conn.storbinary.side_effect = _fake_storbinary(received)
        local = self._source("a.txt", b"12345678")

        sent = self.transport.upload(local, "docs/2024/a.txt")
        self.transport.upload(local, "docs/2024/b.txt")

        self.assertEqual(sent, 8)
        self.assertEqual(received["STOR docs/2024/a.txt"], b"12345678")
        self.assertEqual(self.conn.mkd.call_args_list, [mock.call("docs"), mock.call("docs/2024")])

    def test_upload_at_root_needs_no_mkd(self):
        self.conn.storbinary.side_effect = _fake_storbinary({})
        self.transport.upload(self._source("a.txt", b"a"), "a.txt")
        self.conn.mkd.assert_not_called()

    def test_existing_directories_are_fine(self):
        """MKD answering 550 'File exists' does not fail the upload"""
        self.conn.mkd.side_effect = ftplib.error_perm("550 File exists")
        self.conn.storbinary.side_effect = _fake_storbinary({})
        self.assertEqual(self.transport.upload(self._source("a.txt", b"abc"), "d/a.txt"), 3)

    def test_stor_retried_after_recreating_parent(self):
        """A parent pruned by a concurrent delete is recreated and STOR retried"""
        received = {}
        store = _fake_storbinary(received)
        calls = []

        def flaky(cmd, fp, blocksize=8192, callback=None):
            calls.append(cmd)
            if len(calls) == 1:
                raise ftplib.error_perm("553 Could not create file")
            return store(cmd, fp, blocksize, callback)

        self.conn.storbinary.side_effect = flaky
        sent = self.transport.upload(self._source("a.txt", b"abc"), "d/a.txt")

        self.assertEqual(sent, 3)
        self.assertEqual(len(calls), 2)
        self.assertEqual(self.conn.mkd.call_count, 2)

    def test_upload_timeout_is_per_file(self):
        self.conn.storbinary.side_effect = socket.timeout("timed out")
        with self.assertRaises(TransportError) as ctx:
            self.transport.upload(self._source("a.txt", b"a"), "a.txt")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.TIMEOUT)
        self.assertFalse(ctx.exception.is_fatal)
        self.conn.close.assert_called()

    def test_upload_missing_local_file(self):
        with self.assertRaises(TransportError) as ctx:
            self.transport.upload(self.local / "missing", "a.txt")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.NOT_FOUND)
        self.factory.assert_not_called()


class TestFtpQueries(FtpTestCase):
    """exists() and list()"""

    def test_exists(self):
        self.conn.size.return_value = 5
        self.assertTrue(self.transport.exists("a.txt"))
        self.conn.size.side_effect = ftplib.error_perm("550 No such file")
        self.assertFalse(self.transport.exists("b.txt"))

    def test_list_with_mlsd(self):
        listings = {
            ".": [(".", {"type": "cdir"}), ("sub", {"type": "dir"}), ("a.txt", {"type": "file", "size": "3"})],
            "sub": [("b.txt", {"type": "file", "size": "5"})],
        }
        self.conn.mlsd.side_effect = lambda path, facts=None: iter(listings[path])

        self.assertEqual(self.transport.list(), [RemoteEntry("a.txt", 3), RemoteEntry("sub/b.txt", 5)])

    def test_list_falls_back_to_nlst(self):
        """Servers without MLSD are walked with NLST + SIZE"""
        self.conn.mlsd.side_effect = ftplib.error_perm("500 Unknown command")
        self.conn.nlst.side_effect = lambda path: {".": ["a.txt", "sub"], "sub": ["sub/b.txt"]}[path]
        sizes = {"a.txt": 3, "sub/b.txt": 5}

        def size(path):
            if path not in sizes:
                raise ftplib.error_perm("550 Not a regular file")
            return sizes[path]

        self.conn.size.side_effect = size

        self.assertEqual(self.transport.list(), [RemoteEntry("a.txt", 3), RemoteEntry("sub/b.txt", 5)])

    def test_list_missing_prefix_is_empty(self):
        self.conn.mlsd.side_effect = ftplib.error_perm("550 No such directory")
        self.assertEqual(self.transport.list("nothing"), [])


class TestFtpDownload(FtpTestCase):
    """RETR into a local file"""

    def test_download_writes_local_file(self):
        def retrbinary(cmd, callback, blocksize=8192):
            callback(b"remote ")
            callback(b"copy")
            return "226 Transfer complete"

        self.conn.retrbinary.side_effect = retrbinary

        received = self.transport.download("docs/a.txt", self.local / "a.txt")

        self.assertEqual(received, 11)
        self.assertEqual((self.local / "a.txt").read_bytes(), b"remote copy")
        self.assertEqual(self.conn.retrbinary.call_args[0][0], "RETR docs/a.txt")

    def test_missing_file_is_not_found_and_connection_kept(self):
        """Any 550 on RETR means there is nothing to read"""
        self.conn.retrbinary.side_effect = ftplib.error_perm("550 Failed to open file.")

        with self.assertRaises(TransportError) as ctx:
            self.transport.download("missing.txt", self.local / "out")

        self.assertEqual(ctx.exception.kind, TransportErrorKind.NOT_FOUND)
        self.conn.close.assert_not_called()


class TestFtpDelete(FtpTestCase):
    """DELE and empty-directory cleanup"""

    def test_delete_removes_empty_parents(self):
        def rmd(path):
            if path == "a":
                raise ftplib.error_perm("550 Directory not empty")

        self.conn.rmd.side_effect = rmd
        self.transport.delete("a/b/c.txt")

        self.conn.delete.assert_called_once_with("a/b/c.txt")
        self.assertEqual(self.conn.rmd.call_args_list, [mock.call("a/b"), mock.call("a")])

    def test_delete_missing_is_not_found(self):
        self.conn.delete.side_effect = ftplib.error_perm("550 No such file or directory")
        with self.assertRaises(TransportError) as ctx:
            self.transport.delete("gone.txt")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.NOT_FOUND)
        # a clean 5xx reply keeps the connection in the pool
        self.conn.close.assert_not_called()


class TestFtpConnections(FtpTestCase):
    """Pooling, reconnection and fatal connection errors"""

    def test_connection_reused(self):
        self.transport.exists("a")
        self.transport.exists("b")
        self.assertEqual(self.factory.call_count, 1)

    def test_stale_connection_reopened_once(self):
        stale = mock.MagicMock(name="stale")
        fresh = mock.MagicMock(name="fresh")
        stale.size.side_effect = [1, EOFError()]
        fresh.size.return_value = 3
        self.factory.side_effect = [stale, fresh]

        self.assertTrue(self.transport.exists("a"))
        self.assertTrue(self.transport.exists("b"))

        self.assertEqual(self.factory.call_count, 2)
        stale.close.assert_called()

    def test_login_failure_is_auth_failed(self):
        self.factory.side_effect = ftplib.error_perm("530 Login incorrect.")
        with self.assertRaises(TransportError) as ctx:
            self.transport.exists("a")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.AUTH_FAILED)
        self.assertTrue(ctx.exception.is_fatal)

    def test_unreachable_server_is_connection_failed(self):
        self.factory.side_effect = ConnectionRefusedError(111, "Connection refused")
        with self.assertRaises(TransportError) as ctx:
            self.transport.exists("a")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.CONNECTION_FAILED)

    def test_pool_size_bounds_connections(self):
        factory = mock.MagicMock(side_effect=lambda target: mock.MagicMock())
        transport = FtpTransport(self.target, pool_size=2, connection_factory=factory)
        try:
            with ThreadPoolExecutor(max_workers=8) as pool:
                results = list(pool.map(transport.exists, [f"f{i}" for i in range(32)]))
        finally:
            transport.close()
        self.assertTrue(all(results))
        self.assertLessEqual(factory.call_count, 2)

    def test_close_quits_and_blocks_further_use(self):
        self.transport.exists("a")
        self.transport.close()
        self.conn.quit.assert_called_once()
        with self.assertRaises(TransportError) as ctx:
            self.transport.exists("a")
        self.assertEqual(ctx.exception.kind, TransportErrorKind.CONNECTION_FAILED)

    def test_factory_dispatch(self):
        transport = create_transport(self.target, concurrency=3)
        self.assertIsInstance(transport, FtpTransport)
        self.assertEqual(transport.pool_size, 3)


class TestOpenConnection(unittest.TestCase):
    """Session setup: login, TLS, binary mode and target directory"""

    def test_tls_session(self):
        target = FtpTarget("ftp.example.com", "me", "secret", "/backup", use_tls=True, timeout=5)
        with mock.patch("syncbox.transport.ftp.ftplib.FTP_TLS") as tls_class:
            ftp = open_connection(target)

        tls_class.assert_called_once_with(timeout=5)
        self.assertIs(ftp, tls_class.return_value)
        ftp.connect.assert_called_once_with("ftp.example.com", 21, timeout=5)
        ftp.login.assert_called_once_with("me", "secret")
        ftp.prot_p.assert_called_once()
        ftp.voidcmd.assert_called_once_with("TYPE I")
        ftp.cwd.assert_called_once_with("/backup")

    def test_missing_directory_is_created(self):
        target = FtpTarget("ftp.example.com", directory="/backup/photos")
        with mock.patch("syncbox.transport.ftp.ftplib.FTP") as ftp_class:
            ftp = ftp_class.return_value
            ftp.cwd.side_effect = [ftplib.error_perm("550 No such directory"), None]
            open_connection(target)

        self.assertEqual(ftp.mkd.call_args_list, [mock.call("/backup"), mock.call("/backup/photos")])
        ftp.prot_p.assert_not_called()

    def test_failed_login_closes_socket(self):
        target = FtpTarget("ftp.example.com")
        with mock.patch("syncbox.transport.ftp.ftplib.FTP") as ftp_class:
            ftp = ftp_class.return_value
            ftp.login.side_effect = ftplib.error_perm("530 Login incorrect.")
            with self.assertRaises(ftplib.error_perm):
                open_connection(target)
        ftp.close.assert_called_once()


class TestFtpErrorTranslation(unittest.TestCase):
    """Reply codes and socket errors to TransportErrorKind"""

    def test_kinds(self):
        cases = [
            (ftplib.error_perm("530 Login incorrect."), TransportErrorKind.AUTH_FAILED),
            (ftplib.error_perm("550 No such file or directory"), TransportErrorKind.NOT_FOUND),
            (ftplib.error_perm("550 Permission denied"), TransportErrorKind.PERMISSION_DENIED),
            (ftplib.error_perm("553 Could not create file"), TransportErrorKind.PERMISSION_DENIED),
            (ftplib.error_temp("421 Service not available"), TransportErrorKind.CONNECTION_FAILED),
            (ftplib.error_temp("450 File busy"), TransportErrorKind.PERMISSION_DENIED),
            (ftplib.error_reply("120 Unexpected"), TransportErrorKind.CONNECTION_FAILED),
            (EOFError(), TransportErrorKind.CONNECTION_FAILED),
            (socket.timeout("timed out"), TransportErrorKind.TIMEOUT),
            (ConnectionResetError(104, "reset"), TransportErrorKind.CONNECTION_FAILED),
        ]
        for exc, kind in cases:
            with self.subTest(exc=exc):
                self.assertEqual(translate_ftp_error(exc, "x").kind, kind)


if __name__ == "__main__":
    unittest.main()
