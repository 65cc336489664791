# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Serve TUF metadata and targets stored as images in an OCI registry.

Repository layout
-----------------
Metadata and targets live in two registry repositories, configured as
``oci://registry/repository[:tag]`` URLs (the tag defaults to "latest").

* Metadata repository: one image under the configured tag carries the four
  top-level roles (every root version, timestamp, snapshot, targets), one
  layer per file. Each delegated role is an image tagged with the role name.
* Targets repository: a target ``name`` is an image tagged ``name``. A target
  ``subdir/name`` is found through an image index tagged ``subdir``, whose
  entries point to the images of the files in that directory.

Every layer (and every index entry) carries its original file name in the
``tuf.io/filename`` annotation; that is what requests are matched against.

Manifests and layers, once pulled, are cached for the lifetime of the
backend instance. The caches are not locked: a backend instance must not
serve concurrent fetches.
"""

import json
import logging
import posixpath
import sys
import zlib
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from urllib import parse

from tuf.api.metadata import TOP_LEVEL_ROLE_NAMES

from tufzy import exceptions
from tufzy._internal.registry_client import (
    IMAGE_MEDIA_TYPES,
    INDEX_MEDIA_TYPES,
    ImageReference,
    RegistryClient,
    parse_reference,
)
from tufzy.fetcher import Backend

logger = logging.getLogger(__name__)

FILENAME_ANNOTATION = "tuf.io/filename"
METADATA_MEDIA_TYPE = "application/vnd.tuf.metadata+json"
TARGET_MEDIA_TYPE = "application/vnd.tuf.target"

# layers of these media types are gzip compressed
_GZIP_MEDIA_TYPE_SUFFIXES = ("+gzip", ".tar.gzip")


def role_from_consistent_name(filename: str) -> str:
    """Return the role name of a (possibly version-prefixed) metadata file
    name: "3.root.json" -> "root", "role.json" -> "role"."""
    name = filename[: -len(".json")] if filename.endswith(".json") else filename
    version, sep, role = name.partition(".")
    if sep and version.isdigit():
        return role
    return name


def is_delegated_role(role: str) -> bool:
    return role not in TOP_LEVEL_ROLE_NAMES


@dataclass(frozen=True)
class Descriptor:
    """A manifest entry pointing to a layer or to another manifest."""

    media_type: str
    digest: str
    size: int
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def filename(self) -> Optional[str]:
        return self.annotations.get(FILENAME_ANNOTATION)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Descriptor":
        return cls(
            data.get("mediaType", ""),
            data["digest"],
            int(data.get("size", 0)),
            data.get("annotations") or {},
        )


@dataclass(frozen=True)
class Manifest:
    """An image manifest (``layers``) or image index (``manifests``).

    Both kinds are reduced to one list of candidate descriptors.
    """

    media_type: str
    descriptors: List[Descriptor]
    is_index: bool

    @classmethod
    def from_bytes(cls, data: bytes) -> "Manifest":
        """Decode a manifest.

        Raises:
            exceptions.TransportError: Not a manifest of a known media type.
        """
        try:
            manifest = json.loads(data)
            media_type = manifest.get("mediaType", "")
            if media_type in INDEX_MEDIA_TYPES:
                is_index = True
            elif media_type in IMAGE_MEDIA_TYPES:
                is_index = False
            elif not media_type and "manifests" in manifest:
                is_index = True
            elif not media_type and "layers" in manifest:
                is_index = False
            else:
                raise exceptions.TransportError(
                    f"Invalid manifest media type: {media_type!r}"
                )

            entries = manifest.get("manifests" if is_index else "layers")
            descriptors = [Descriptor.from_dict(d) for d in entries or []]
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise exceptions.TransportError("Invalid manifest") from e

        return cls(media_type, descriptors, is_index)

    def find(self, filename: str) -> Optional[Descriptor]:
        for descriptor in self.descriptors:
            if descriptor.filename == filename:
                return descriptor
        return None


class ImageCache:
    """Write-once in-memory store of pulled manifests or layers, keyed by
    exact locator (``name:tag`` or ``name@digest``).

    Entries are never evicted or replaced. Not thread-safe.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, bytes] = {}

    def get(self, locator: str) -> Optional[bytes]:
        return self._entries.get(locator)

    def put(self, locator: str, data: bytes) -> None:
        self._entries.setdefault(locator, data)

    def __contains__(self, locator: str) -> bool:
        return locator in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class RegistryBackend(Backend):
    """``Backend`` that resolves TUF requests to OCI registry content.

    Args:
        metadata_url: ``oci://`` URL of the metadata repository. Its tag
            names the image carrying the top-level roles.
        targets_url: ``oci://`` URL of the targets repository.
        client: Registry client. A ``RegistryClient`` using the default
            credential chain is created if not given.

    Raises:
        exceptions.ConfigurationError: A URL is not a valid image reference.
    """

    def __init__(
        self,
        metadata_url: str,
        targets_url: str,
        client: Optional[RegistryClient] = None,
    ) -> None:
        self.metadata_url = metadata_url.rstrip("/")
        self.targets_url = targets_url.rstrip("/")

        try:
            self.metadata_ref = parse_reference(self.metadata_url)
        except ValueError as e:
            raise exceptions.ConfigurationError(
                f"Failed to parse metadata repository {metadata_url}"
            ) from e
        try:
            self.targets_ref = parse_reference(self.targets_url)
        except ValueError as e:
            raise exceptions.ConfigurationError(
                f"Failed to parse targets repository {targets_url}"
            ) from e

        self.client = client if client is not None else RegistryClient()
        self.manifest_cache = ImageCache()
        self.layer_cache = ImageCache()

    def parse_image_reference(self, url: str) -> Tuple[ImageReference, str]:
        """Return the image to look in and the file name to look for.

        Raises:
            exceptions.ConfigurationError: ``url`` is in neither repository.
        """
        targets_prefix = f"{self.targets_url}/"
        if url.startswith(targets_prefix):
            # <repo>/<filename>         -> image <repo>:<filename>
            # <repo>/<subdir>/<filename> -> index <repo>:<subdir>
            target = url[len(targets_prefix) :]
            subdir, sep, _ = target.partition("/")
            if sep:
                return self.targets_ref.with_tag(subdir), target
            return self.targets_ref.with_tag(target), target

        metadata_prefix = f"{self.metadata_url}/"
        if url.startswith(metadata_prefix):
            filename = parse.unquote(posixpath.basename(url))
            role = role_from_consistent_name(filename)
            if is_delegated_role(role):
                return self.metadata_ref.with_tag(role), filename
            return self.metadata_ref, filename

        raise exceptions.ConfigurationError(
            f"{url} must be in the metadata or the targets repository"
        )

    def _fetch(self, url: str, max_length: int, timeout: float) -> bytes:
        image, filename = self.parse_image_reference(url)

        manifest = self._get_manifest(image, timeout)
        image, descriptor = self._find_file(image, manifest, filename, timeout)
        return self._pull_layer(image, descriptor, max_length, timeout)

    def _get_manifest(self, image: ImageReference, timeout: float) -> Manifest:
        data = self.manifest_cache.get(image.locator)
        if data is None:
            data = self.client.get_manifest(image, timeout)
            self.manifest_cache.put(image.locator, data)
        else:
            logger.debug("Manifest %s found in cache", image.locator)

        return Manifest.from_bytes(data)

    def _find_file(
        self,
        image: ImageReference,
        manifest: Manifest,
        filename: str,
        timeout: float,
    ) -> Tuple[ImageReference, Descriptor]:
        """Search the manifest for ``filename``, descending through index
        manifests until an image manifest is reached.

        Returns the image holding the file and the file's layer descriptor.
        """
        descriptor = manifest.find(filename)
        if descriptor is None:
            raise exceptions.NotFoundError(
                f"File {filename} not found in {image.locator}"
            )

        if not manifest.is_index:
            return image, descriptor

        # inside an index the entry's image names the file without its dir
        child = image.with_digest(descriptor.digest)
        child_manifest = self._get_manifest(child, timeout)
        return self._find_file(
            child, child_manifest, filename.rsplit("/", 1)[-1], timeout
        )

    def _pull_layer(
        self,
        image: ImageReference,
        descriptor: Descriptor,
        max_length: int,
        timeout: float,
    ) -> bytes:
        if descriptor.size > max_length:
            raise exceptions.LengthMismatchError(
                f"Download failed, length {descriptor.size} is larger than"
                f" expected {max_length}"
            )

        layer = image.with_digest(descriptor.digest)
        data = self.layer_cache.get(layer.locator)
        if data is None:
            raw = self.client.get_blob(
                image, descriptor.digest, max_length, timeout
            )
            data = raw
            if descriptor.media_type.endswith(_GZIP_MEDIA_TYPE_SUFFIXES):
                data = self._gunzip(raw, max_length)
            if len(data) <= max_length:
                self.layer_cache.put(layer.locator, data)
        else:
            logger.debug("Layer %s found in cache", layer.locator)

        if len(data) > max_length:
            raise exceptions.LengthMismatchError(
                f"Download failed, length {len(data)} is larger than"
                f" expected {max_length}"
            )
        return data

    @staticmethod
    def _gunzip(raw: bytes, max_length: int) -> bytes:
        # decompress at most max_length + 1 bytes (0 means no limit)
        limit = max_length + 1 if max_length < sys.maxsize else 0
        decompressor = zlib.decompressobj(wbits=zlib.MAX_WBITS | 16)
        try:
            data = decompressor.decompress(raw, limit)
        except zlib.error as e:
            raise exceptions.TransportError("Invalid compressed layer") from e

        if not decompressor.eof:
            if limit and len(data) >= limit:
                raise exceptions.LengthMismatchError(
                    "Download failed, decompressed length is larger than"
                    f" expected {max_length}"
                )
            raise exceptions.TransportError("Truncated compressed layer")
        return data
