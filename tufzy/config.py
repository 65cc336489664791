# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Configuration options for the ``Client`` class."""

import os
from dataclasses import dataclass, field
from enum import Enum, unique
from typing import Optional


@unique
class RepositoryKind(Enum):
    """Selects the backend a ``Client`` fetches through.

    Args:
        FILESYSTEM: Canonical versioned layout on local disk or over HTTP(S).
        TUF_ON_CI_GIT: Unversioned tuf-on-ci git working tree.
        REGISTRY: Metadata and targets stored as OCI registry images.
    """

    FILESYSTEM = "filesystem"
    TUF_ON_CI_GIT = "tuf-on-ci-git"
    REGISTRY = "registry"


def _default_cache_root() -> str:
    return os.path.join(os.path.expanduser("~"), ".tufzy", "cache")


@dataclass
class ClientConfig:
    """Used to store ``Client`` configuration.

    Args:
        cache_root: Directory under which per-repository caches are created.
        timeout: Timeout in seconds for every backend request.
        chunk_size: Chunk size in bytes used for HTTP downloads.
        max_root_rotations: Maximum number of root rotations.
        max_delegations: Maximum number of delegations searched for a
            target.
        root_max_length: Maximum length of a root metadata file, also used
            for the trust-on-first-use download of ``1.root.json``.
        timestamp_max_length: Maximum length of a timestamp metadata file.
        snapshot_max_length: Maximum length of a snapshot metadata file.
        targets_max_length: Maximum length of a targets (including delegated
            targets) metadata file.
        app_user_agent: Application user agent, e.g. "MyApp/1.0.0". This is
            prefixed to the tufzy user agent for HTTP requests.
    """

    cache_root: str = field(default_factory=_default_cache_root)
    timeout: float = 30  # seconds
    chunk_size: int = 400000  # bytes
    max_root_rotations: int = 32
    max_delegations: int = 32
    root_max_length: int = 512000  # bytes
    timestamp_max_length: int = 16384  # bytes
    snapshot_max_length: int = 2000000  # bytes
    targets_max_length: int = 5000000  # bytes
    app_user_agent: Optional[str] = None
