# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Unit test for FilesystemBackend."""

import os
import sys
import tempfile
import unittest
from typing import ClassVar
from unittest.mock import Mock, patch

import requests

from tests import utils
from tufzy import exceptions
from tufzy.filesystem_backend import FilesystemBackend


class TestFilesystemBackendLocal(unittest.TestCase):
    """Test reading local files."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.file_contents = b"junk data"
        self.path = os.path.join(self.temp_dir.name, "file.txt")
        with open(self.path, "wb") as f:
            f.write(self.file_contents)
        self.backend = FilesystemBackend()

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_plain_path(self) -> None:
        data = self.backend.fetch(self.path, len(self.file_contents), 1)
        self.assertEqual(self.file_contents, data)

    def test_file_url(self) -> None:
        data = self.backend.fetch(f"file://{self.path}", 100, 1)
        self.assertEqual(self.file_contents, data)

    def test_file_url_quoted(self) -> None:
        path = os.path.join(self.temp_dir.name, "with space.txt")
        with open(path, "wb") as f:
            f.write(b"spaced")
        url = f"file://{self.temp_dir.name}/with%20space.txt"
        self.assertEqual(self.backend.fetch(url, 100, 1), b"spaced")

    def test_not_found(self) -> None:
        with self.assertRaises(exceptions.NotFoundError) as cm:
            self.backend.fetch(os.path.join(self.temp_dir.name, "nope"), 10, 1)
        self.assertEqual(cm.exception.status_code, 404)

    def test_directory_is_transport_error(self) -> None:
        with self.assertRaises(exceptions.TransportError):
            self.backend.fetch(self.temp_dir.name, 10, 1)

    def test_length_mismatch(self) -> None:
        with self.assertRaises(exceptions.LengthMismatchError):
            self.backend.fetch(self.path, len(self.file_contents) - 1, 1)

    def test_unsupported_scheme(self) -> None:
        with self.assertRaises(exceptions.ConfigurationError):
            self.backend.fetch("ftp://example.com/file.txt", 10, 1)


class TestFilesystemBackendHttp(unittest.TestCase):
    """Test downloading over HTTP from a local test server."""

    temp_dir: ClassVar[tempfile.TemporaryDirectory]

    @classmethod
    def setUpClass(cls) -> None:
        cls.temp_dir = tempfile.TemporaryDirectory()
        cls.file_contents = b"junk data"
        cls.file_length = len(cls.file_contents)
        with open(os.path.join(cls.temp_dir.name, "file.txt"), "wb") as f:
            f.write(cls.file_contents)

        cls.server = utils.serve_directory(cls.temp_dir.name)
        cls.url_prefix = cls.server.__enter__()
        cls.url = f"{cls.url_prefix}/file.txt"

    @classmethod
    def tearDownClass(cls) -> None:
        cls.server.__exit__(None, None, None)
        cls.temp_dir.cleanup()

    def setUp(self) -> None:
        self.backend = FilesystemBackend()

    def test_fetch(self) -> None:
        data = self.backend.fetch(self.url, self.file_length, 5)
        self.assertEqual(self.file_contents, data)

    def test_fetch_in_chunks(self) -> None:
        self.backend.chunk_size = 4
        data = self.backend.fetch(self.url, self.file_length + 4, 5)
        self.assertEqual(self.file_contents, data)

    def test_http_not_found(self) -> None:
        with self.assertRaises(exceptions.NotFoundError) as cm:
            self.backend.fetch(f"{self.url_prefix}/non-existing-path", 10, 5)
        self.assertEqual(cm.exception.status_code, 404)

    def test_length_mismatch(self) -> None:
        with self.assertRaises(exceptions.LengthMismatchError):
            self.backend.fetch(self.url, self.file_length - 4, 5)

    def test_session_reused_per_host(self) -> None:
        self.backend.fetch(self.url, self.file_length, 5)
        self.backend.fetch(self.url, self.file_length, 5)
        self.assertEqual(len(self.backend._sessions), 1)

    def test_user_agent(self) -> None:
        backend = FilesystemBackend(app_user_agent="MyApp/1.0")
        session = backend._get_session(self.url)
        self.assertTrue(
            session.headers["User-Agent"].startswith("MyApp/1.0 tufzy/")
        )

    @patch.object(requests.Session, "get")
    def test_http_error(self, mock_session_get: Mock) -> None:
        mock_response = Mock()
        mock_response.raise_for_status.side_effect = requests.HTTPError(
            "503 Server Error", response=Mock(status_code=503)
        )
        mock_session_get.return_value = mock_response

        with self.assertRaises(exceptions.TransportError) as cm:
            self.backend.fetch(self.url, 10, 5)
        self.assertEqual(cm.exception.status_code, 503)

    @patch.object(requests.Session, "get")
    def test_response_read_error(self, mock_session_get: Mock) -> None:
        mock_response = Mock()
        attr = {
            "iter_content.side_effect": requests.exceptions.ConnectionError(
                "Simulated timeout"
            )
        }
        mock_response.configure_mock(**attr)
        mock_session_get.return_value = mock_response

        with self.assertRaises(exceptions.TransportError):
            self.backend.fetch(self.url, 10, 5)
        mock_response.iter_content.assert_called_once()
        mock_response.close.assert_called_once()

    @patch.object(
        requests.Session,
        "get",
        side_effect=requests.exceptions.Timeout("Simulated timeout"),
    )
    def test_session_get_timeout(self, mock_session_get: Mock) -> None:
        with self.assertRaises(exceptions.TransportError):
            self.backend.fetch(self.url, 10, 5)
        mock_session_get.assert_called_once()


# Run unit test.
if __name__ == "__main__":
    utils.configure_test_logging(sys.argv)
    unittest.main()
