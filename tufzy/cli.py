# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""tufzy command line interface

Examples:
  $ tufzy list https://example.github.io/repo/metadata
  $ tufzy get ./repo/metadata myfile.txt -o /tmp/myfile.txt
  $ tufzy info oci://ghcr.io/org/metadata --targets-url oci://ghcr.io/org/tgts
  $ tufzy convert ./tuf-on-ci-checkout ./published
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from tuf.api.exceptions import DownloadError, RepositoryError

from tufzy.client import Client, Delegation
from tufzy.layout import layout_from_tuf_on_ci

logger = logging.getLogger(__name__)


def _client(args: argparse.Namespace) -> Client:
    client = Client(
        args.metadata_url,
        targets_url=args.targets_url,
        tuf_on_ci_git=args.tuf_on_ci_git,
    )
    client.refresh()
    return client


def cmd_list(args: argparse.Namespace) -> None:
    targets = _client(args).get_targets()
    if not targets:
        print("No targets found")
        return

    print(f"Found {len(targets)} target(s):")
    for target in targets:
        print(f"  {target.name} ({target.length} bytes)")
        for algorithm, value in sorted(target.hashes.items()):
            print(f"    {algorithm}: {value}")


def cmd_get(args: argparse.Namespace) -> None:
    dest_path = args.output or os.path.basename(args.target)
    print(f"Downloading {args.target} to {dest_path}")

    path, target = _client(args).download_target(args.target, dest_path)
    print(f"Verified and saved {path} ({target.length} bytes)")


def cmd_info(args: argparse.Namespace) -> None:
    info = _client(args).get_repository_info()

    print(f"Metadata URL:        {info.metadata_url}")
    print(f"Targets URL:         {info.targets_url}")
    print(f"Repository kind:     {info.kind.value}")
    print(f"Consistent snapshot: {info.consistent_snapshot}")
    print(f"Hash prefixes:       {info.hash_prefixes}")
    for role, version, expires in (
        ("root", info.root_version, info.root_expires),
        ("timestamp", info.timestamp_version, info.timestamp_expires),
        ("snapshot", info.snapshot_version, info.snapshot_expires),
        ("targets", info.targets_version, info.targets_expires),
    ):
        print(f"  {role:<10} v{version:<5} expires {expires.isoformat()}")


def _print_delegations(delegations: List[Delegation], depth: int) -> None:
    indent = "  " * depth
    for delegation in delegations:
        paths = ", ".join(delegation.paths) or "-"
        print(
            f"{indent}{delegation.name} (threshold {delegation.threshold},"
            f" {len(delegation.keyids)} key(s)) paths: {paths}"
        )
        _print_delegations(delegation.children, depth + 1)


def cmd_delegations(args: argparse.Namespace) -> None:
    delegations = _client(args).get_delegations()
    print("targets")
    if not delegations:
        print("  (no delegations)")
    _print_delegations(delegations, 1)


def cmd_convert(args: argparse.Namespace) -> None:
    layout_from_tuf_on_ci(args.source, args.output)
    print(f"Wrote canonical layout of {args.source} to {args.output}")


def _add_repository_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "metadata_url",
        metavar="METADATA_URL",
        help="Metadata directory, URL or oci:// repository",
    )
    parser.add_argument(
        "--targets-url",
        help="Targets repository URL (required for OCI registries)",
    )
    parser.add_argument(
        "--tuf-on-ci-git",
        action="store_true",
        help="Use tuf-on-ci git repository layout",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tufzy",
        description="Verify and download files from TUF repositories on "
        "HTTP(S), the local filesystem or OCI registries",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        help="Output verbosity level (-v, -vv, ...)",
        action="count",
        default=0,
    )

    sub_command = parser.add_subparsers(dest="sub_command")

    list_parser = sub_command.add_parser("list", help="List available targets")
    _add_repository_args(list_parser)
    list_parser.set_defaults(func=cmd_list)

    get_parser = sub_command.add_parser(
        "get", help="Download and verify a target file"
    )
    _add_repository_args(get_parser)
    get_parser.add_argument("target", metavar="TARGET", help="Target file")
    get_parser.add_argument(
        "-o", "--output", help="Output path (default: current directory)"
    )
    get_parser.set_defaults(func=cmd_get)

    info_parser = sub_command.add_parser(
        "info", help="Show repository metadata information"
    )
    _add_repository_args(info_parser)
    info_parser.set_defaults(func=cmd_info)

    delegations_parser = sub_command.add_parser(
        "delegations", help="Show the delegation tree"
    )
    _add_repository_args(delegations_parser)
    delegations_parser.set_defaults(func=cmd_delegations)

    convert_parser = sub_command.add_parser(
        "convert",
        help="Convert a tuf-on-ci git layout into a canonical TUF layout",
    )
    convert_parser.add_argument(
        "source", metavar="SOURCE", help="tuf-on-ci repository directory"
    )
    convert_parser.add_argument(
        "output", metavar="OUTPUT", help="Output directory"
    )
    convert_parser.set_defaults(func=cmd_convert)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.verbose == 0:
        loglevel = logging.ERROR
    elif args.verbose == 1:
        loglevel = logging.WARNING
    elif args.verbose == 2:
        loglevel = logging.INFO
    else:
        loglevel = logging.DEBUG

    logging.basicConfig(level=loglevel)

    if args.sub_command is None:
        parser.print_help()
        return 1

    try:
        args.func(args)
    except (OSError, RepositoryError, DownloadError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
