# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Provide common utilities for tufzy tests.

``TufOnCiRepository`` builds a small, correctly signed repository in the
tuf-on-ci git layout (or serializes it for other layouts) so that tests can
run a real ``Updater`` against every backend::

    repo = TufOnCiRepository()
    repo.add_target("targets", "file.txt", b"content")
    repo.add_delegation("targets", "role1", ["dir/*"])
    repo.add_target("role1", "dir/other.txt", b"other")
    repo.write(tmp_dir)
"""

import argparse
import datetime
import logging
import os
import threading
import unittest
from contextlib import contextmanager
from functools import partial
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Dict, Iterator, List, Sequence

from securesystemslib.signer import CryptoSigner, Signer
from tuf.api.metadata import (
    TOP_LEVEL_ROLE_NAMES,
    DelegatedRole,
    Delegations,
    Metadata,
    MetaFile,
    Root,
    Snapshot,
    SuccinctRoles,
    TargetFile,
    Targets,
    Timestamp,
)
from tuf.api.serialization.json import JSONSerializer

logger = logging.getLogger(__name__)

# May be used to reliably read other files in tests dir regardless of cwd
TESTS_DIR = os.path.dirname(os.path.realpath(__file__))

# Used when forming URLs on the client side
TEST_HOST_ADDRESS = "127.0.0.1"

# DataSet is only here so type hints can be used.
DataSet = Dict[str, Any]


# Test runner decorator: Runs the test as a set of N SubTests,
# (where N is number of items in dataset), feeding the actual test
# function one test case at a time
def run_sub_tests_with_dataset(
    dataset: DataSet,
) -> Callable[[Callable], Callable]:
    """Decorator starting a unittest.TestCase.subtest() for each of the
    cases in dataset"""

    def real_decorator(
        function: Callable[[unittest.TestCase, Any], None],
    ) -> Callable[[unittest.TestCase], None]:
        def wrapper(test_cls: unittest.TestCase) -> None:
            for case, data in dataset.items():
                with test_cls.subTest(case=case):
                    function(test_cls, data)

        return wrapper

    return real_decorator


def configure_test_logging(argv: List[str]) -> None:
    """Configure logger level for a certain test file"""
    # parse arguments but only handle '-v': argv may contain
    # other things meant for unittest argument parser
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("-v", "--verbose", action="count", default=0)
    args, _ = parser.parse_known_args(argv)

    if args.verbose <= 1:
        # 0 and 1 both mean ERROR: this way '-v' makes unittest print test
        # names without increasing log level
        loglevel = logging.ERROR
    elif args.verbose == 2:
        loglevel = logging.WARNING
    elif args.verbose == 3:
        loglevel = logging.INFO
    else:
        loglevel = logging.DEBUG

    logging.basicConfig(level=loglevel)


class _QuietHandler(SimpleHTTPRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        logger.debug("%s %s", self.address_string(), format % args)


@contextmanager
def serve_directory(directory: str) -> Iterator[str]:
    """Serve ``directory`` over HTTP on a free local port.

    Yields the base URL of the server, e.g. "http://127.0.0.1:41234".
    """
    handler = partial(_QuietHandler, directory=directory)
    httpd = ThreadingHTTPServer((TEST_HOST_ADDRESS, 0), handler)
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{TEST_HOST_ADDRESS}:{httpd.server_address[1]}"
    finally:
        httpd.shutdown()
        httpd.server_close()
        thread.join()


class TufOnCiRepository:
    """A signed repository held in memory.

    Roles are signed when serialized, so metadata may be modified freely
    until ``write()`` or ``metadata_bytes()`` is called.
    """

    def __init__(self, consistent_snapshot: bool = True) -> None:
        now = datetime.datetime.now(datetime.timezone.utc)
        self.safe_expiry = now.replace(microsecond=0) + datetime.timedelta(
            days=30
        )

        self.signers: Dict[str, Signer] = {}
        self.md_root = Metadata(
            Root(
                expires=self.safe_expiry,
                consistent_snapshot=consistent_snapshot,
            )
        )
        self.md_timestamp = Metadata(Timestamp(expires=self.safe_expiry))
        self.md_snapshot = Metadata(Snapshot(expires=self.safe_expiry))
        self.md_targets = Metadata(Targets(expires=self.safe_expiry))
        self.md_delegates: Dict[str, Metadata[Targets]] = {}

        # target content by target path
        self.target_data: Dict[str, bytes] = {}

        for role in TOP_LEVEL_ROLE_NAMES:
            signer = CryptoSigner.generate_ed25519()
            self.md_root.signed.add_key(signer.public_key, role)
            self.signers[role] = signer

        # every published root version, serialized
        self.signed_roots: List[bytes] = []
        self.publish_root()

    def publish_root(self) -> None:
        """Sign and store the current root version."""
        self.md_root.signatures.clear()
        self.md_root.sign(self.signers[Root.type])
        self.signed_roots.append(self.md_root.to_bytes(JSONSerializer()))

    def _targets_role(self, role: str) -> Metadata[Targets]:
        if role == Targets.type:
            return self.md_targets
        return self.md_delegates[role]

    def add_target(
        self,
        role: str,
        path: str,
        data: bytes,
        hash_algorithms: Sequence[str] = ("sha256",),
    ) -> TargetFile:
        target_file = TargetFile.from_data(path, data, list(hash_algorithms))
        self._targets_role(role).signed.targets[path] = target_file
        self.target_data[path] = data
        return target_file

    def add_delegation(
        self, delegator: str, name: str, paths: List[str]
    ) -> None:
        """Delegate ``paths`` from ``delegator`` to role ``name``.

        A role that is already delegated keeps its key and metadata.
        """
        signed = self._targets_role(delegator).signed
        if signed.delegations is None:
            signed.delegations = Delegations({}, roles={})
        assert signed.delegations.roles is not None

        if name not in self.signers:
            self.signers[name] = CryptoSigner.generate_ed25519()
            self.md_delegates[name] = Metadata(
                Targets(expires=self.safe_expiry)
            )

        signed.delegations.roles[name] = DelegatedRole(
            name, [], 1, False, paths
        )
        signed.add_key(self.signers[name].public_key, name)

    def add_succinct_delegation(
        self, delegator: str, bit_length: int, name_prefix: str
    ) -> List[str]:
        """Delegate all paths from ``delegator`` to hash bins sharing one key.

        Returns the names of the bins.
        """
        signer = CryptoSigner.generate_ed25519()
        keyid = signer.public_key.keyid
        succinct_roles = SuccinctRoles([keyid], 1, bit_length, name_prefix)
        self._targets_role(delegator).signed.delegations = Delegations(
            {keyid: signer.public_key}, succinct_roles=succinct_roles
        )

        bins = list(succinct_roles.get_roles())
        for name in bins:
            self.signers[name] = signer
            self.md_delegates[name] = Metadata(
                Targets(expires=self.safe_expiry)
            )
        return bins

    def _sign(self, role: str, md: Metadata) -> bytes:
        md.signatures.clear()
        md.sign(self.signers[role])
        return md.to_bytes(JSONSerializer(compact=False))

    def metadata_bytes(self) -> Dict[str, bytes]:
        """Return the signed, unversioned metadata of every role except root
        by role name, with snapshot and timestamp meta brought up to date."""
        snapshot_meta = {
            "targets.json": MetaFile(self.md_targets.signed.version)
        }
        for name, md in self.md_delegates.items():
            snapshot_meta[f"{name}.json"] = MetaFile(md.signed.version)
        self.md_snapshot.signed.meta = snapshot_meta
        self.md_timestamp.signed.snapshot_meta = MetaFile(
            self.md_snapshot.signed.version
        )

        data = {
            Targets.type: self._sign(Targets.type, self.md_targets),
            Snapshot.type: self._sign(Snapshot.type, self.md_snapshot),
            Timestamp.type: self._sign(Timestamp.type, self.md_timestamp),
        }
        for name, md in self.md_delegates.items():
            data[name] = self._sign(name, md)
        return data

    def version(self, role: str) -> int:
        if role == Root.type:
            return self.md_root.signed.version
        if role == Snapshot.type:
            return self.md_snapshot.signed.version
        if role == Timestamp.type:
            return self.md_timestamp.signed.version
        return self._targets_role(role).signed.version

    def write(self, repo_dir: str) -> None:
        """Write the tuf-on-ci git layout into ``repo_dir``:
        metadata/root.json, metadata/root_history/N.root.json,
        metadata/<role>.json and targets/<path>."""
        metadata_dir = os.path.join(repo_dir, "metadata")
        history_dir = os.path.join(metadata_dir, "root_history")
        targets_dir = os.path.join(repo_dir, "targets")
        os.makedirs(history_dir, exist_ok=True)
        os.makedirs(targets_dir, exist_ok=True)

        for version, data in enumerate(self.signed_roots, start=1):
            _write(os.path.join(history_dir, f"{version}.root.json"), data)
        _write(os.path.join(metadata_dir, "root.json"), self.signed_roots[-1])

        for role, data in self.metadata_bytes().items():
            _write(os.path.join(metadata_dir, f"{role}.json"), data)

        for path, data in self.target_data.items():
            target_path = os.path.join(targets_dir, *path.split("/"))
            os.makedirs(os.path.dirname(target_path), exist_ok=True)
            _write(target_path, data)


def _write(path: str, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)
