# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Serve a tuf-on-ci git working tree to a TUF client.

A tuf-on-ci checkout keeps only the current, unversioned copy of
timestamp, snapshot and targets metadata, and keeps older root versions in a
``root_history`` directory. A TUF client always asks for versioned names, so
``TufOnCiBackend`` rewrites the filename of each request before handing it
to ``FilesystemBackend``:

    =====================  ===========================
    requested              served
    =====================  ===========================
    1.root.json            1.root.json
    N.root.json (N > 1)    root_history/N.root.json
    N.snapshot.json        snapshot.json
    N.timestamp.json       timestamp.json
    N.targets.json         targets.json
    anything else          unchanged
    =====================  ===========================

The version of snapshot, timestamp and targets requests is dropped: the
current file is served whatever version was asked for.
"""

import logging
import posixpath
import re
from typing import Optional
from urllib import parse

from tufzy.filesystem_backend import FilesystemBackend

logger = logging.getLogger(__name__)

_VERSIONED_NAME = re.compile(
    r"^(\d+)\.(root|snapshot|timestamp|targets)\.json$"
)


def map_tuf_on_ci_url(url: str) -> str:
    """Return the tuf-on-ci location of a versioned metadata ``url``.

    Only the filename component is rewritten. ``url`` may be a URL or a
    plain path.
    """
    parsed_url = parse.urlparse(url)
    dirname, _, filename = parsed_url.path.rpartition("/")

    match = _VERSIONED_NAME.match(filename)
    if match is None:
        return url

    version, role = match.groups()
    if role == "root":
        if version == "1":
            return url
        new_path = posixpath.join(dirname, "root_history", filename)
    else:
        new_path = posixpath.join(dirname, f"{role}.json")

    # posixpath.join drops an empty dirname; keep absolute paths absolute
    if parsed_url.path.startswith("/") and not new_path.startswith("/"):
        new_path = f"/{new_path}"

    return parse.urlunparse(parsed_url._replace(path=new_path))


class TufOnCiBackend(FilesystemBackend):
    """``FilesystemBackend`` that maps versioned metadata requests onto a
    tuf-on-ci git layout.

    Args:
        metadata_base_url: If given, only requests under this URL are
            rewritten, so target files are never renamed.
    """

    def __init__(
        self,
        metadata_base_url: Optional[str] = None,
        chunk_size: int = 400000,
        app_user_agent: Optional[str] = None,
    ) -> None:
        super().__init__(chunk_size, app_user_agent)
        self.metadata_base_url = metadata_base_url

    def _fetch(self, url: str, max_length: int, timeout: float) -> bytes:
        if self.metadata_base_url is None or url.startswith(
            self.metadata_base_url
        ):
            mapped_url = map_tuf_on_ci_url(url)
            if mapped_url != url:
                logger.debug("Mapped %s to %s", url, mapped_url)
            url = mapped_url

        return super()._fetch(url, max_length, timeout)
