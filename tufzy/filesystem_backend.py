# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Provides a ``Backend`` for local files and HTTP(S) URLs, the latter
implemented with the Requests HTTP library.
"""

import logging
from typing import Dict, Optional, Tuple
from urllib import parse

# Imports
import requests

import tufzy
from tufzy import exceptions
from tufzy.fetcher import Backend

# Globals
logger = logging.getLogger(__name__)


# Classes
class FilesystemBackend(Backend):
    """Serves ``file://`` URLs and plain paths from disk, everything else
    over HTTP(S).

    The two cases bound length differently: a local file is read completely
    and then compared with ``max_length``, while an HTTP body is streamed and
    abandoned as soon as it grows past ``max_length``.

    Attributes:
        chunk_size: Chunk size in bytes used when downloading.
        app_user_agent: Optional application user agent.
    """

    def __init__(
        self,
        chunk_size: int = 400000,
        app_user_agent: Optional[str] = None,
    ) -> None:
        # NOTE: We use a separate requests.Session per scheme+hostname
        # combination, in order to reuse connections to the same hostname
        # while not sharing cookies or auth between hosts.
        self._sessions: Dict[Tuple[str, str], requests.Session] = {}

        self.chunk_size: int = chunk_size  # bytes
        self.app_user_agent = app_user_agent

    def _fetch(self, url: str, max_length: int, timeout: float) -> bytes:
        parsed_url = parse.urlparse(url)
        if parsed_url.scheme in ("http", "https"):
            return self._fetch_http(url, max_length, timeout)

        if parsed_url.scheme == "file":
            path = parse.unquote(parsed_url.path)
        elif not parsed_url.scheme or len(parsed_url.scheme) == 1:
            # plain path (a single letter "scheme" is a Windows drive)
            path = url
        else:
            raise exceptions.ConfigurationError(
                f"Unsupported URL scheme in {url}"
            )

        return self._read_file(path, max_length)

    @staticmethod
    def _read_file(path: str, max_length: int) -> bytes:
        try:
            with open(path, "rb") as f:
                data = f.read()
        except FileNotFoundError as e:
            raise exceptions.NotFoundError(f"File {path} not found") from e
        except OSError as e:
            raise exceptions.TransportError(f"Failed to read {path}") from e

        if 0 < max_length < len(data):
            raise exceptions.LengthMismatchError(
                f"File size {len(data)} exceeds the maximum allowed length"
                f" of {max_length}"
            )

        logger.debug("Read %d bytes from %s", len(data), path)
        return data

    def _fetch_http(self, url: str, max_length: int, timeout: float) -> bytes:
        session = self._get_session(url)

        # Defer downloading the response body with stream=True. requests
        # applies the timeout both to the connection and to every read.
        try:
            response = session.get(url, stream=True, timeout=timeout)
        except requests.exceptions.RequestException as e:
            raise exceptions.TransportError(f"Failed to download {url}") from e

        try:
            try:
                response.raise_for_status()
            except requests.HTTPError as e:
                status = e.response.status_code
                if status == 404:
                    raise exceptions.NotFoundError(str(e)) from e
                raise exceptions.TransportError(str(e), status) from e

            return self._read_body(response, max_length)
        finally:
            response.close()

    def _read_body(self, response: requests.Response, max_length: int) -> bytes:
        data = bytearray()
        try:
            for chunk in response.iter_content(self.chunk_size):
                # keep at most max_length + 1 bytes: enough to detect excess
                if max_length > 0:
                    chunk = chunk[: max_length + 1 - len(data)]
                data += chunk
                if 0 < max_length < len(data):
                    raise exceptions.LengthMismatchError(
                        f"Downloaded more than the maximum allowed length"
                        f" of {max_length}"
                    )
        except requests.exceptions.RequestException as e:
            raise exceptions.TransportError(
                f"Failed to download {response.url}"
            ) from e

        logger.debug("Downloaded %d bytes from %s", len(data), response.url)
        return bytes(data)

    def _get_session(self, url: str) -> requests.Session:
        """Return a different customized requests.Session per schema+hostname
        combination.
        """
        parsed_url = parse.urlparse(url)
        session_index = (parsed_url.scheme, parsed_url.hostname or "")
        session = self._sessions.get(session_index)

        if not session:
            session = requests.Session()
            self._sessions[session_index] = session

            ua = f"tufzy/{tufzy.__version__} {session.headers['User-Agent']}"
            if self.app_user_agent is not None:
                ua = f"{self.app_user_agent} {ua}"
            session.headers["User-Agent"] = ua

            logger.debug("Made new session %s", session_index)
        else:
            logger.debug("Reusing session %s", session_index)

        return session
