# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Test the tufzy command line interface."""

import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from typing import List, Tuple
from unittest.mock import patch

from tests import utils
from tufzy import cli


class TestCli(unittest.TestCase):
    """Run tufzy subcommands against a tuf-on-ci repository on disk."""

    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.source = os.path.join(self.temp_dir.name, "source")
        self.metadata_dir = os.path.join(self.source, "metadata")

        repo = utils.TufOnCiRepository()
        repo.add_target("targets", "file.txt", b"content")
        repo.add_delegation("targets", "role1", ["dir/*"])
        repo.write(self.source)

        # keep the client cache out of the real home directory
        self.home = patch.dict(os.environ, {"HOME": self.temp_dir.name})
        self.home.start()

    def tearDown(self) -> None:
        self.home.stop()
        self.temp_dir.cleanup()

    def _run(self, argv: List[str]) -> Tuple[int, str, str]:
        stdout, stderr = io.StringIO(), io.StringIO()
        with redirect_stdout(stdout), redirect_stderr(stderr):
            code = cli.main(argv)
        return code, stdout.getvalue(), stderr.getvalue()

    def test_list(self) -> None:
        code, out, _ = self._run(["list", self.metadata_dir])
        self.assertEqual(code, 0)
        self.assertIn("Found 1 target(s):", out)
        self.assertIn("file.txt (7 bytes)", out)

    def test_get(self) -> None:
        dest = os.path.join(self.temp_dir.name, "out.txt")
        code, _, _ = self._run(
            ["get", self.metadata_dir, "file.txt", "-o", dest]
        )
        self.assertEqual(code, 0)
        with open(dest, "rb") as f:
            self.assertEqual(f.read(), b"content")

    def test_info(self) -> None:
        code, out, _ = self._run(["info", self.metadata_dir])
        self.assertEqual(code, 0)
        self.assertIn("Repository kind:     tuf-on-ci-git", out)
        self.assertIn("Consistent snapshot: True", out)

    def test_delegations(self) -> None:
        code, out, _ = self._run(["delegations", self.metadata_dir])
        self.assertEqual(code, 0)
        self.assertIn("role1 (threshold 1, 1 key(s)) paths: dir/*", out)

    def test_convert(self) -> None:
        output = os.path.join(self.temp_dir.name, "output")
        code, _, _ = self._run(["convert", self.source, output])
        self.assertEqual(code, 0)
        self.assertTrue(
            os.path.isfile(os.path.join(output, "metadata", "1.targets.json"))
        )

    def test_errors(self) -> None:
        missing = os.path.join(self.temp_dir.name, "missing")
        code, _, err = self._run(["list", missing])
        self.assertEqual(code, 1)
        self.assertIn("Error:", err)

        code, _, err = self._run(["convert", missing, missing + "-out"])
        self.assertEqual(code, 1)
        self.assertIn("Error:", err)

    def test_no_command(self) -> None:
        code, out, _ = self._run([])
        self.assertEqual(code, 1)
        self.assertIn("usage:", out)


# Run unit test.
if __name__ == "__main__":
    utils.configure_test_logging(sys.argv)
    unittest.main()
