# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Convert a tuf-on-ci git layout into a canonical TUF repository layout.

Source (tuf-on-ci working tree)::

    metadata/root_history/N.root.json
    metadata/timestamp.json
    metadata/snapshot.json
    metadata/<role>.json
    targets/<path>

Output (what a TUF client with consistent snapshots expects)::

    metadata/N.root.json
    metadata/timestamp.json
    metadata/N.snapshot.json
    metadata/N.<role>.json
    targets/<dir>/<hash>.<basename>     one copy per declared hash

Metadata is copied byte for byte; it is only decoded to learn versions,
targets and delegations. The conversion is not transactional: when it fails,
whatever was written so far stays in the output directory, which must then
be discarded.
"""

import logging
import os
from collections import deque
from typing import Deque, List, Set

from tuf.api.metadata import Metadata, Snapshot, Targets
from tuf.api.serialization import DeserializationError

from tufzy.exceptions import LayoutConversionError

logger = logging.getLogger(__name__)

ROOT_HISTORY_DIR = "root_history"


def _read_file(path: str) -> bytes:
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise LayoutConversionError(f"Failed to read {path}: {e}", path) from e


def _write_file(path: str, data: bytes) -> None:
    try:
        with open(path, "wb") as f:
            f.write(data)
    except OSError as e:
        raise LayoutConversionError(f"Failed to write {path}: {e}", path) from e


def _copy_file(src: str, dst: str) -> None:
    _write_file(dst, _read_file(src))
    logger.debug("Copied %s to %s", src, dst)


def _makedirs(path: str) -> None:
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise LayoutConversionError(
            f"Failed to create directory {path}: {e}", path
        ) from e


def _join_target_path(base: str, target_path: str) -> str:
    """Join a target path below ``base``, rejecting paths that leave it."""
    base = os.path.abspath(base)
    path = os.path.normpath(os.path.join(base, *target_path.split("/")))
    if os.path.commonpath([base, path]) != base:
        raise LayoutConversionError(
            f"Target path {target_path} escapes {base}", target_path
        )
    return path


def _delegated_role_names(targets: Targets) -> List[str]:
    delegations = targets.delegations
    if delegations is None:
        return []
    if delegations.roles is not None:
        return list(delegations.roles)
    if delegations.succinct_roles is not None:
        return list(delegations.succinct_roles.get_roles())
    return []


def layout_from_tuf_on_ci(source_dir: str, output_dir: str) -> None:
    """Write the canonical layout of the tuf-on-ci tree ``source_dir`` into
    ``output_dir``.

    Roles are discovered breadth first starting from "targets". A role that
    is delegated to more than once is converted once.

    Raises:
        LayoutConversionError: An expected input is missing or cannot be
            decoded, or the output cannot be written. ``path`` names the
            offending file.
    """
    metadata_dir = os.path.join(source_dir, "metadata")
    targets_dir = os.path.join(source_dir, "targets")
    output_metadata_dir = os.path.join(output_dir, "metadata")
    output_targets_dir = os.path.join(output_dir, "targets")

    _makedirs(output_metadata_dir)

    # Root history files are already version-named
    root_history_dir = os.path.join(metadata_dir, ROOT_HISTORY_DIR)
    try:
        history_files = sorted(os.listdir(root_history_dir))
    except OSError as e:
        raise LayoutConversionError(
            f"Failed to read root history from {root_history_dir}: {e}",
            root_history_dir,
        ) from e

    for filename in history_files:
        if filename.endswith(".root.json"):
            _copy_file(
                os.path.join(root_history_dir, filename),
                os.path.join(output_metadata_dir, filename),
            )

    # Timestamp is never versioned
    _copy_file(
        os.path.join(metadata_dir, "timestamp.json"),
        os.path.join(output_metadata_dir, "timestamp.json"),
    )

    snapshot_path = os.path.join(metadata_dir, "snapshot.json")
    data = _read_file(snapshot_path)
    try:
        snapshot = Metadata[Snapshot].from_bytes(data)
    except DeserializationError as e:
        raise LayoutConversionError(
            f"Failed to load snapshot from {snapshot_path}: {e}", snapshot_path
        ) from e
    _write_file(
        os.path.join(
            output_metadata_dir, f"{snapshot.signed.version}.snapshot.json"
        ),
        data,
    )

    queue: Deque[str] = deque([Targets.type])
    converted: Set[str] = set()
    while queue:
        role_name = queue.popleft()
        if role_name in converted:
            logger.debug("Role %s already converted", role_name)
            continue
        converted.add(role_name)

        role_path = os.path.join(metadata_dir, f"{role_name}.json")
        data = _read_file(role_path)
        try:
            role = Metadata[Targets].from_bytes(data)
        except DeserializationError as e:
            raise LayoutConversionError(
                f"Failed to load targets for role {role_name} from"
                f" {role_path}: {e}",
                role_path,
            ) from e
        if not isinstance(role.signed, Targets):
            raise LayoutConversionError(
                f"Expected targets metadata in {role_path}, got"
                f" {role.signed.type}",
                role_path,
            )

        _write_file(
            os.path.join(
                output_metadata_dir, f"{role.signed.version}.{role_name}.json"
            ),
            data,
        )
        logger.debug("Converted role %s v%d", role_name, role.signed.version)

        for target_path, target_file in role.signed.targets.items():
            source_path = _join_target_path(targets_dir, target_path)
            dirname, _, basename = target_path.rpartition("/")
            output_subdir = _join_target_path(output_targets_dir, dirname)
            _makedirs(output_subdir)

            for hash_value in target_file.hashes.values():
                _copy_file(
                    source_path,
                    os.path.join(output_subdir, f"{hash_value}.{basename}"),
                )

        queue.extend(_delegated_role_names(role.signed))
