# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Provides the single fetch contract shared by all tufzy backends."""

# Imports
import abc
import logging
import sys
import tempfile
from contextlib import contextmanager
from typing import IO, Iterator

from tuf.ngclient.fetcher import FetcherInterface

from tufzy import exceptions

logger = logging.getLogger(__name__)


# Classes
class Backend(metaclass=abc.ABCMeta):
    """Defines an interface for retrieving repository files by address.

    A backend resolves one logical address (a metadata or target URL formed
    by the trust engine) to bytes. Implementations of Backend only need to
    implement ``_fetch()``. The public API of the class is already
    implemented.
    """

    @abc.abstractmethod
    def _fetch(self, url: str, max_length: int, timeout: float) -> bytes:
        """Return the contents of ``url``.

        Implementations must raise ``NotFoundError`` when the file does not
        exist and ``LengthMismatchError`` when it is larger than
        ``max_length``. Errors that are not ``DownloadErrors`` will be
        wrapped in a ``TransportError`` by ``fetch()``.

        Args:
            url: URL or path that represents a file location.
            max_length: Upper bound of file size in bytes.
            timeout: Timeout in seconds for any blocking request.

        Raises:
            exceptions.NotFoundError: The file does not exist.
            exceptions.LengthMismatchError: The file exceeds ``max_length``.

        Returns:
            Content of the file in bytes.
        """
        raise NotImplementedError  # pragma: no cover

    def fetch(self, url: str, max_length: int, timeout: float) -> bytes:
        """Return the contents of ``url``.

        Args:
            url: URL or path that represents a file location.
            max_length: Upper bound of file size in bytes.
            timeout: Timeout in seconds for any blocking request.

        Raises:
            exceptions.NotFoundError: The file does not exist.
            exceptions.LengthMismatchError: The file exceeds ``max_length``.
            exceptions.TransportError: Network, registry or auth failure.
            exceptions.ConfigurationError: ``url`` is not served by this
                backend.

        Returns:
            Content of the file in bytes.
        """
        # Ensure that fetch() only raises DownloadErrors, regardless of the
        # backend implementation
        try:
            return self._fetch(url, max_length, timeout)
        except exceptions.DownloadError as e:
            raise e
        except Exception as e:
            raise exceptions.TransportError(f"Failed to download {url}") from e


class BackendFetcher(FetcherInterface):
    """Plugs a ``Backend`` into ``tuf.ngclient.Updater``.

    ``Updater`` only calls ``download_bytes()`` and ``download_file()``, both
    of which hand the length bound straight to the backend so it can be
    checked before any content is transferred.

    Attributes:
        backend: The backend all requests are routed to.
        timeout: Timeout in seconds passed to every backend call.
    """

    def __init__(self, backend: Backend, timeout: float = 30) -> None:
        self.backend = backend
        self.timeout = timeout

    def _fetch(self, url: str) -> Iterator[bytes]:
        # Plain fetch() carries no length bound
        yield self.backend.fetch(url, sys.maxsize, self.timeout)

    @contextmanager
    def download_file(self, url: str, max_length: int) -> Iterator[IO]:
        """Download file from given ``url`` into a temporary file.

        Raises:
            exceptions.DownloadError: An error occurred during download.
            exceptions.DownloadLengthMismatchError: File exceeds
                ``max_length``.
        """
        data = self.download_bytes(url, max_length)
        with tempfile.TemporaryFile() as temp_file:
            temp_file.write(data)
            temp_file.seek(0)
            yield temp_file

    def download_bytes(self, url: str, max_length: int) -> bytes:
        logger.debug("Downloading: %s", url)
        data = self.backend.fetch(url, max_length, self.timeout)
        logger.debug(
            "Downloaded %d out of %d bytes", len(data), max_length
        )
        return data
