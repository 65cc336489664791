# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Repository session: one TUF ``Updater`` bound to one storage backend.

``Client`` detects what kind of repository a URL points to, selects the
matching backend once, bootstraps the trusted root on first use and then
delegates all verification to ``tuf.ngclient.Updater``.

Example::

    client = Client("oci://ghcr.io/org/metadata:latest",
                    targets_url="oci://ghcr.io/org/targets")
    client.refresh()
    for target in client.get_targets():
        print(target.name, target.length)
"""

import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib import parse

from tuf.api.metadata import (
    Metadata,
    Root,
    Snapshot,
    Targets,
    Timestamp,
)
from tuf.ngclient import Updater, UpdaterConfig

from tufzy import exceptions
from tufzy._internal.registry_client import OCI_SCHEME, RegistryClient
from tufzy.config import ClientConfig, RepositoryKind
from tufzy.fetcher import Backend, BackendFetcher
from tufzy.filesystem_backend import FilesystemBackend
from tufzy.registry_backend import RegistryBackend
from tufzy.tuf_on_ci_backend import TufOnCiBackend

logger = logging.getLogger(__name__)


@dataclass
class TargetInfo:
    """A target file as listed by the repository."""

    name: str
    length: int
    hashes: Dict[str, str]
    custom: Optional[Any] = None


@dataclass
class RepositoryInfo:
    """Versions and expiry of the trusted top-level metadata."""

    metadata_url: str
    targets_url: str
    kind: RepositoryKind
    consistent_snapshot: bool
    hash_prefixes: bool
    root_version: int
    root_expires: datetime
    timestamp_version: int
    timestamp_expires: datetime
    snapshot_version: int
    snapshot_expires: datetime
    targets_version: int
    targets_expires: datetime


@dataclass
class Delegation:
    """A delegated role and the roles it delegates to in turn."""

    name: str
    threshold: int
    keyids: List[str]
    paths: List[str]
    children: List["Delegation"] = field(default_factory=list)


def is_local_path(url: str) -> bool:
    return (
        os.path.isabs(url)
        or url in (".", "..")
        or url.startswith("./")
        or url.startswith("../")
    )


def is_tuf_on_ci_layout(metadata_dir: str) -> bool:
    """True if ``metadata_dir`` holds unversioned top-level metadata."""
    return all(
        os.path.isfile(os.path.join(metadata_dir, f"{role}.json"))
        for role in (Timestamp.type, Snapshot.type, Targets.type)
    )


def detect_repository_kind(
    metadata_url: str,
    targets_url: Optional[str] = None,
    tuf_on_ci_git: bool = False,
) -> RepositoryKind:
    """Decide which backend serves ``metadata_url``.

    Raises:
        exceptions.ConfigurationError: An ``oci://`` metadata URL without an
            ``oci://`` targets URL.
    """
    if metadata_url.startswith(OCI_SCHEME):
        if not targets_url:
            raise exceptions.ConfigurationError(
                "targets URL is required for OCI repositories"
            )
        if not targets_url.startswith(OCI_SCHEME):
            raise exceptions.ConfigurationError(
                f"targets URL {targets_url} must be an {OCI_SCHEME} URL"
            )
        return RepositoryKind.REGISTRY

    if tuf_on_ci_git:
        return RepositoryKind.TUF_ON_CI_GIT
    if is_local_path(metadata_url) and is_tuf_on_ci_layout(metadata_url):
        return RepositoryKind.TUF_ON_CI_GIT
    return RepositoryKind.FILESYSTEM


def create_backend(
    kind: RepositoryKind,
    metadata_url: str,
    targets_url: str,
    config: ClientConfig,
) -> Backend:
    """Construct the backend for ``kind``."""
    if kind == RepositoryKind.REGISTRY:
        client = RegistryClient(
            chunk_size=config.chunk_size, app_user_agent=config.app_user_agent
        )
        return RegistryBackend(metadata_url, targets_url, client)
    if kind == RepositoryKind.TUF_ON_CI_GIT:
        return TufOnCiBackend(
            metadata_url, config.chunk_size, config.app_user_agent
        )
    return FilesystemBackend(config.chunk_size, config.app_user_agent)


def _load_metadata(path: str) -> Metadata:
    with open(path, "rb") as f:
        return Metadata.from_bytes(f.read())


def _default_targets_url(metadata_url: str) -> str:
    # targets live next to the metadata directory
    parsed_url = parse.urlparse(metadata_url)
    parent = parsed_url.path.rstrip("/").rpartition("/")[0]
    return parse.urlunparse(parsed_url._replace(path=f"{parent}/targets"))


class Client:
    """A TUF client session for one repository.

    Args:
        metadata_url: Local metadata directory, HTTP(S) metadata URL or
            ``oci://`` metadata repository.
        targets_url: Targets location. Required for ``oci://`` repositories,
            otherwise defaults to the "targets" sibling of the metadata.
        tuf_on_ci_git: Force the tuf-on-ci git layout. Local directories
            with unversioned top-level metadata are detected without it.
        config: ``Optional``; ``ClientConfig`` with common options.

    Raises:
        exceptions.ConfigurationError: Inconsistent URLs.
        exceptions.DownloadError: The initial root could not be fetched.
        OSError: The local cache could not be created.
        RepositoryError: The initial root is invalid.
    """

    def __init__(
        self,
        metadata_url: str,
        targets_url: Optional[str] = None,
        tuf_on_ci_git: bool = False,
        config: Optional[ClientConfig] = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.kind = detect_repository_kind(
            metadata_url, targets_url, tuf_on_ci_git
        )

        # one cache directory per repository
        cache_id = hashlib.sha256(metadata_url.encode()).hexdigest()[:16]
        self.cache_dir = os.path.join(self.config.cache_root, cache_id)
        self.metadata_dir = os.path.join(self.cache_dir, "metadata")
        self.targets_dir = os.path.join(self.cache_dir, "targets")
        os.makedirs(self.metadata_dir, exist_ok=True)
        os.makedirs(self.targets_dir, exist_ok=True)

        local = is_local_path(metadata_url)
        if local:
            metadata_url = f"file://{os.path.abspath(metadata_url)}"
            if targets_url is not None and is_local_path(targets_url):
                targets_url = f"file://{os.path.abspath(targets_url)}"
        self.metadata_url = metadata_url.rstrip("/")
        if targets_url is None:
            targets_url = _default_targets_url(self.metadata_url)
        self.targets_url = targets_url.rstrip("/")

        self.backend = create_backend(
            self.kind, self.metadata_url, self.targets_url, self.config
        )
        logger.debug(
            "Using %s backend for %s", self.kind.value, self.metadata_url
        )

        bootstrap = self._bootstrap_root(local)
        root = Metadata[Root].from_bytes(bootstrap)
        self.consistent_snapshot = root.signed.consistent_snapshot
        # tuf-on-ci git trees keep targets under their plain names
        self.hash_prefixes = (
            self.consistent_snapshot
            and self.kind != RepositoryKind.TUF_ON_CI_GIT
        )

        self._updater = Updater(
            metadata_dir=self.metadata_dir,
            metadata_base_url=f"{self.metadata_url}/",
            target_dir=self.targets_dir,
            target_base_url=f"{self.targets_url}/",
            fetcher=BackendFetcher(self.backend, self.config.timeout),
            config=UpdaterConfig(
                max_root_rotations=self.config.max_root_rotations,
                max_delegations=self.config.max_delegations,
                root_max_length=self.config.root_max_length,
                timestamp_max_length=self.config.timestamp_max_length,
                snapshot_max_length=self.config.snapshot_max_length,
                targets_max_length=self.config.targets_max_length,
                prefix_targets_with_hash=self.hash_prefixes,
            ),
            bootstrap=bootstrap,
        )
        self._refreshed = False

    def _bootstrap_root(self, local: bool) -> bytes:
        """Return the initial trusted root.

        The cached root is trusted if there is one. Otherwise the first root
        version is fetched from the repository and trusted on first use; the
        updater caches it.
        """
        root_path = os.path.join(self.metadata_dir, "root.json")
        if os.path.exists(root_path):
            with open(root_path, "rb") as f:
                return f.read()

        names = ["1.root.json", "root.json"] if local else ["1.root.json"]
        for name in names:
            try:
                data = self.backend.fetch(
                    f"{self.metadata_url}/{name}",
                    self.config.root_max_length,
                    self.config.timeout,
                )
                break
            except exceptions.NotFoundError:
                if name == names[-1]:
                    raise
                logger.debug("No %s, trying next candidate", name)

        logger.info("Trusting initial root from %s", self.metadata_url)
        return data

    def refresh(self) -> None:
        """Refresh top-level metadata from the repository.

        Only the first call of a session contacts the repository.
        """
        if self._refreshed:
            return
        self._updater.refresh()
        self._refreshed = True

    def _load_local(self, role: str) -> Metadata:
        self.refresh()
        filename = f"{parse.quote(role, '')}.json"
        return _load_metadata(os.path.join(self.metadata_dir, filename))

    def get_targets(self) -> List[TargetInfo]:
        """Return the targets listed by the top-level targets role."""
        targets: Metadata[Targets] = self._load_local(Targets.type)
        return [
            TargetInfo(name, tf.length, dict(tf.hashes), tf.custom)
            for name, tf in sorted(targets.signed.targets.items())
        ]

    def get_repository_info(self) -> RepositoryInfo:
        root: Metadata[Root] = self._load_local(Root.type)
        timestamp: Metadata[Timestamp] = self._load_local(Timestamp.type)
        snapshot: Metadata[Snapshot] = self._load_local(Snapshot.type)
        targets: Metadata[Targets] = self._load_local(Targets.type)

        return RepositoryInfo(
            metadata_url=self.metadata_url,
            targets_url=self.targets_url,
            kind=self.kind,
            consistent_snapshot=root.signed.consistent_snapshot,
            hash_prefixes=self.hash_prefixes,
            root_version=root.signed.version,
            root_expires=root.signed.expires,
            timestamp_version=timestamp.signed.version,
            timestamp_expires=timestamp.signed.expires,
            snapshot_version=snapshot.signed.version,
            snapshot_expires=snapshot.signed.expires,
            targets_version=targets.signed.version,
            targets_expires=targets.signed.expires,
        )

    def get_delegations(self) -> List[Delegation]:
        """Return the delegation tree below the top-level targets role.

        Children are listed for delegated roles whose metadata has already
        been loaded by the updater.
        """
        targets: Metadata[Targets] = self._load_local(Targets.type)
        return self._delegations_of(targets.signed, {Targets.type})

    def _delegations_of(
        self, targets: Targets, seen: Set[str]
    ) -> List[Delegation]:
        if targets.delegations is None or targets.delegations.roles is None:
            return []

        delegations = []
        for role in targets.delegations.roles.values():
            delegation = Delegation(
                role.name,
                role.threshold,
                list(role.keyids),
                list(role.paths or role.path_hash_prefixes or []),
            )
            path = os.path.join(
                self.metadata_dir, f"{parse.quote(role.name, '')}.json"
            )
            if role.name not in seen and os.path.exists(path):
                child: Metadata[Targets] = _load_metadata(path)
                delegation.children = self._delegations_of(
                    child.signed, seen | {role.name}
                )
            delegations.append(delegation)

        return delegations

    def download_target(
        self, name: str, dest_path: Optional[str] = None
    ) -> Tuple[str, TargetInfo]:
        """Download and verify target ``name``.

        Returns the local path and the target's info.

        Raises:
            exceptions.NotFoundError: No role lists ``name``.
        """
        self.refresh()
        target_file = self._updater.get_targetinfo(name)
        if target_file is None:
            raise exceptions.NotFoundError(f"Target {name} not found")

        path = self._updater.download_target(target_file, dest_path)
        logger.info("Downloaded %s to %s", name, path)
        return path, TargetInfo(
            name,
            target_file.length,
            dict(target_file.hashes),
            target_file.custom,
        )
