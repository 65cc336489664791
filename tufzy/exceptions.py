# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""
Define the exceptions raised by tufzy backends and tools.

The download errors subclass their python-tuf counterparts so that
``tuf.ngclient.Updater`` treats them exactly like errors coming from its own
fetchers: a ``NotFoundError`` ends a root rotation the same way an HTTP 404
does, regardless of the backend that produced it.
"""

from typing import Optional

from tuf.api.exceptions import (
    DownloadError,
    DownloadHTTPError,
    DownloadLengthMismatchError,
    RepositoryError,
)

#### Download errors ####


class NotFoundError(DownloadHTTPError):
    """The requested file does not exist in the backend.

    Raised for a missing local file, an HTTP 404 and a filename absent from a
    registry manifest alike.
    """

    def __init__(self, message: str):
        super().__init__(message, 404)


class LengthMismatchError(DownloadLengthMismatchError):
    """Declared or actual file size exceeds the allowed maximum."""


class TransportError(DownloadError):
    """Network, registry or authentication failure.

    Args:
        message: Error message
        status_code: HTTP status code, if the failure was an HTTP response
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ConfigurationError(DownloadError):
    """A request falls outside the configured repositories."""


#### Layout errors ####


class LayoutConversionError(RepositoryError):
    """An expected input of a layout conversion is missing or unreadable.

    Args:
        message: Error message
        path: The file or directory that could not be read
    """

    def __init__(self, message: str, path: str):
        super().__init__(message)
        self.path = path
