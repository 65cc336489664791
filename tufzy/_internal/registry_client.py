# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Minimal OCI distribution API client built on the Requests HTTP library.

Only the two read operations needed to resolve a file are implemented:
fetching a manifest by tag or digest and fetching a blob by digest.
"""

import base64
import dataclasses
import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import requests

import tufzy
from tufzy import exceptions
from tufzy._internal import registry_auth

logger = logging.getLogger(__name__)

OCI_SCHEME = "oci://"
DEFAULT_TAG = "latest"

OCI_IMAGE_INDEX = "application/vnd.oci.image.index.v1+json"
OCI_IMAGE_MANIFEST = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_LIST = (
    "application/vnd.docker.distribution.manifest.list.v2+json"
)
DOCKER_MANIFEST = "application/vnd.docker.distribution.manifest.v2+json"

INDEX_MEDIA_TYPES = (OCI_IMAGE_INDEX, DOCKER_MANIFEST_LIST)
IMAGE_MEDIA_TYPES = (OCI_IMAGE_MANIFEST, DOCKER_MANIFEST)

# Registries reject manifests larger than this, so never read more
MAX_MANIFEST_LENGTH = 4 * 1024 * 1024  # bytes

_DOMAIN_COMPONENT = r"(?:[a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9-]*[a-zA-Z0-9])"
_DOMAIN = re.compile(
    rf"^{_DOMAIN_COMPONENT}(?:\.{_DOMAIN_COMPONENT})*(?::[0-9]+)?$"
)
_PATH_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
_REPOSITORY = re.compile(rf"^{_PATH_COMPONENT}(?:/{_PATH_COMPONENT})*$")
_TAG = re.compile(r"^[\w][\w.-]{0,127}$")
_DIGEST = re.compile(r"^[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[a-zA-Z0-9=_-]{32,}$")
_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


@dataclass(frozen=True)
class ImageReference:
    """Location of a manifest in a registry.

    Attributes:
        registry: Registry host, with port if any.
        repository: Repository path within the registry.
        tag: Tag, ignored when ``digest`` is set.
        digest: Content digest, e.g. "sha256:...".
    """

    registry: str
    repository: str
    tag: str = DEFAULT_TAG
    digest: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.repository}"

    @property
    def reference(self) -> str:
        """Tag or digest as used in registry API paths."""
        return self.digest or self.tag

    @property
    def locator(self) -> str:
        """``name:tag`` or ``name@digest``."""
        if self.digest:
            return f"{self.name}@{self.digest}"
        return f"{self.name}:{self.tag}"

    def with_tag(self, tag: str) -> "ImageReference":
        return dataclasses.replace(self, tag=tag, digest=None)

    def with_digest(self, digest: str) -> "ImageReference":
        return dataclasses.replace(self, digest=digest)


def parse_reference(ref: str) -> ImageReference:
    """Parse ``[oci://]registry/repository[:tag][@digest]``.

    References without a registry host are Docker Hub references, single
    component Docker Hub repositories live under "library/".

    Raises:
        ValueError: ``ref`` is not a valid image reference.
    """
    remainder = ref[len(OCI_SCHEME) :] if ref.startswith(OCI_SCHEME) else ref

    remainder, _, digest = remainder.partition("@")
    tag = DEFAULT_TAG
    name, sep, maybe_tag = remainder.rpartition(":")
    if sep and "/" not in maybe_tag:
        remainder, tag = name, maybe_tag

    first, sep, rest = remainder.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        registry, repository = first, rest
    else:
        registry, repository = registry_auth.DOCKER_HUB_REGISTRY, remainder
        if "/" not in repository:
            repository = f"library/{repository}"

    if not _DOMAIN.match(registry):
        raise ValueError(f"Invalid registry in reference {ref}")
    if not _REPOSITORY.match(repository):
        raise ValueError(f"Invalid repository in reference {ref}")
    if not _TAG.match(tag):
        raise ValueError(f"Invalid tag in reference {ref}")
    if digest and not _DIGEST.match(digest):
        raise ValueError(f"Invalid digest in reference {ref}")

    return ImageReference(registry, repository, tag, digest or None)


def _parse_challenge(header: str) -> Tuple[str, Dict[str, str]]:
    scheme, _, params = header.strip().partition(" ")
    return scheme.lower(), dict(_CHALLENGE_PARAM.findall(params))


class RegistryClient:
    """Reads manifests and blobs over the OCI distribution API.

    Authorization is negotiated lazily: a request is first sent with the
    authorization previously obtained for the repository (if any), and a
    401 response is answered by resolving credentials from the keychain and
    following the ``WWW-Authenticate`` challenge.

    Args:
        keychain: Credential provider chain. Defaults to
            ``registry_auth.default_keychain()``.
        chunk_size: Chunk size in bytes used when downloading.
        app_user_agent: Optional application user agent.
    """

    def __init__(
        self,
        keychain: Optional[registry_auth.Keychain] = None,
        chunk_size: int = 400000,
        app_user_agent: Optional[str] = None,
    ) -> None:
        if keychain is None:
            keychain = registry_auth.default_keychain()
        self._keychain = keychain
        self.chunk_size = chunk_size
        self.app_user_agent = app_user_agent

        self._sessions: Dict[str, requests.Session] = {}
        # Authorization header values per (registry, repository)
        self._authorizations: Dict[Tuple[str, str], str] = {}

    @staticmethod
    def _base_url(registry: str) -> str:
        if registry == registry_auth.DOCKER_HUB_REGISTRY:
            return "https://registry-1.docker.io"
        host = registry.split(":")[0]
        if host in ("localhost", "127.0.0.1"):
            return f"http://{registry}"
        return f"https://{registry}"

    def get_manifest(self, ref: ImageReference, timeout: float) -> bytes:
        """Return the raw manifest for ``ref``.

        Raises:
            exceptions.NotFoundError: Registry reports the manifest unknown.
            exceptions.TransportError: Any other failure.
        """
        url = (
            f"{self._base_url(ref.registry)}/v2/{ref.repository}"
            f"/manifests/{ref.reference}"
        )
        accept = ", ".join(INDEX_MEDIA_TYPES + IMAGE_MEDIA_TYPES)
        response = self._get(ref, url, timeout, {"Accept": accept})
        try:
            data = self._read(response, MAX_MANIFEST_LENGTH)
        finally:
            response.close()

        if len(data) > MAX_MANIFEST_LENGTH:
            raise exceptions.TransportError(
                f"Manifest {ref.locator} exceeds {MAX_MANIFEST_LENGTH} bytes"
            )
        logger.debug("Pulled manifest %s", ref.locator)
        return data

    def get_blob(
        self, ref: ImageReference, digest: str, max_length: int, timeout: float
    ) -> bytes:
        """Return the blob ``digest`` of ``ref``'s repository.

        At most ``max_length + 1`` bytes are read: a result longer than
        ``max_length`` means the blob is too large.

        Raises:
            exceptions.NotFoundError: Registry reports the blob unknown.
            exceptions.TransportError: Any other failure.
        """
        url = (
            f"{self._base_url(ref.registry)}/v2/{ref.repository}"
            f"/blobs/{digest}"
        )
        response = self._get(ref, url, timeout, {})
        try:
            data = self._read(response, max_length)
        finally:
            response.close()

        logger.debug("Pulled blob %s@%s", ref.name, digest)
        return data

    def _read(self, response: requests.Response, max_length: int) -> bytes:
        data = bytearray()
        try:
            for chunk in response.iter_content(self.chunk_size):
                data += chunk[: max_length + 1 - len(data)]
                if len(data) > max_length:
                    break
        except requests.exceptions.RequestException as e:
            raise exceptions.TransportError(
                f"Failed to read {response.url}"
            ) from e
        return bytes(data)

    def _get(
        self,
        ref: ImageReference,
        url: str,
        timeout: float,
        headers: Dict[str, str],
    ) -> requests.Response:
        session = self._get_session(ref.registry)
        key = (ref.registry, ref.repository)

        try:
            response = session.get(
                url,
                headers=self._with_auth(headers, key),
                stream=True,
                timeout=timeout,
            )
            if response.status_code == 401:
                challenge = response.headers.get("WWW-Authenticate", "")
                response.close()
                self._authorizations[key] = self._authorize(
                    ref, challenge, timeout
                )
                response = session.get(
                    url,
                    headers=self._with_auth(headers, key),
                    stream=True,
                    timeout=timeout,
                )
        except requests.exceptions.RequestException as e:
            raise exceptions.TransportError(f"Failed to download {url}") from e

        if response.status_code == 404:
            response.close()
            raise exceptions.NotFoundError(f"{url} not found")
        if response.status_code >= 400:
            response.close()
            raise exceptions.TransportError(
                f"{response.status_code} error for {url}",
                response.status_code,
            )
        return response

    def _with_auth(
        self, headers: Dict[str, str], key: Tuple[str, str]
    ) -> Dict[str, str]:
        authorization = self._authorizations.get(key)
        if authorization is None:
            return headers
        return {**headers, "Authorization": authorization}

    def _authorize(
        self, ref: ImageReference, challenge: str, timeout: float
    ) -> str:
        """Answer an authentication challenge, return the Authorization
        header value to use for ``ref``'s repository."""
        scheme, params = _parse_challenge(challenge)
        credential = (
            self._keychain.resolve(ref.registry) or registry_auth.ANONYMOUS
        )

        if scheme == "basic":
            if not (credential.username or credential.password):
                raise exceptions.TransportError(
                    f"{ref.registry} requires credentials", 401
                )
            userpass = f"{credential.username}:{credential.password}"
            return "Basic " + base64.b64encode(userpass.encode()).decode()

        if scheme != "bearer" or "realm" not in params:
            raise exceptions.TransportError(
                f"Unsupported authentication challenge from {ref.registry}:"
                f" {challenge!r}",
                401,
            )

        if credential.registry_token:
            return f"Bearer {credential.registry_token}"

        token = self._fetch_token(ref, credential, params, timeout)
        return f"Bearer {token}"

    def _fetch_token(
        self,
        ref: ImageReference,
        credential: registry_auth.Credential,
        params: Dict[str, str],
        timeout: float,
    ) -> str:
        realm = params["realm"]
        scope = f"repository:{ref.repository}:pull"
        session = self._get_session(ref.registry)

        try:
            if credential.identity_token:
                # OAuth2 refresh token grant
                response = session.post(
                    realm,
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": credential.identity_token,
                        "service": params.get("service", ""),
                        "scope": scope,
                        "client_id": "tufzy",
                    },
                    timeout=timeout,
                )
            else:
                auth = None
                if not credential.is_anonymous:
                    auth = (credential.username, credential.password)
                query = {"scope": scope}
                if "service" in params:
                    query["service"] = params["service"]
                response = session.get(
                    realm, params=query, auth=auth, timeout=timeout
                )
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as e:
            raise exceptions.TransportError(
                f"Failed to authenticate to {ref.registry}"
            ) from e
        except ValueError as e:
            raise exceptions.TransportError(
                f"Invalid token response from {realm}"
            ) from e

        token = None
        if isinstance(body, dict):
            token = body.get("token") or body.get("access_token")
        if not token:
            raise exceptions.TransportError(
                f"No token in response from {realm}"
            )

        logger.debug("Obtained token for %s", ref.name)
        return token

    def _get_session(self, registry: str) -> requests.Session:
        session = self._sessions.get(registry)

        if not session:
            session = requests.Session()
            self._sessions[registry] = session

            ua = f"tufzy/{tufzy.__version__} {session.headers['User-Agent']}"
            if self.app_user_agent is not None:
                ua = f"{self.app_user_agent} {ua}"
            session.headers["User-Agent"] = ua

            logger.debug("Made new session for %s", registry)

        return session
