# Copyright New York University and the TUF contributors
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Credential lookup for OCI registries.

Credentials come from an ordered chain of providers (keychains):

  * the local container-runtime configuration (``~/.docker/config.json``,
    including the credential helpers and the credential store it names),
  * the Google Cloud identity of the ``gcloud`` command line tool, for
    ``gcr.io`` and Artifact Registry hosts,
  * the Amazon ECR credential helper, for ECR hosts.

The first provider that has a credential for the registry wins. When none
has one, requests are made anonymously: a missing or broken provider is
logged at debug level and otherwise ignored.
"""

import abc
import base64
import json
import logging
import os
import re
import subprocess
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

# Docker Hub credentials are stored under its legacy index URL
DOCKER_HUB_REGISTRY = "docker.io"
DOCKER_HUB_CONFIG_KEY = "https://index.docker.io/v1/"

HELPER_TIMEOUT = 30  # seconds

_ECR_HOST = re.compile(
    r"^\d{12}\.dkr\.ecr(-fips)?\.[a-z0-9-]+\.amazonaws\.com(\.cn)?$"
)


@dataclass(frozen=True)
class Credential:
    """Credential for one registry.

    Attributes:
        username: Username for basic auth or the token endpoint.
        password: Password or access token.
        identity_token: OAuth2 refresh token, exchanged at the token endpoint.
        registry_token: Bearer token sent to the registry as is.
    """

    username: str = ""
    password: str = ""
    identity_token: Optional[str] = None
    registry_token: Optional[str] = None

    @property
    def is_anonymous(self) -> bool:
        return not (
            self.username
            or self.password
            or self.identity_token
            or self.registry_token
        )


ANONYMOUS = Credential()


class Keychain(metaclass=abc.ABCMeta):
    """A provider of registry credentials."""

    @abc.abstractmethod
    def resolve(self, registry: str) -> Optional[Credential]:
        """Return the credential for ``registry`` or None if this provider
        has none."""
        raise NotImplementedError  # pragma: no cover


class HelperKeychain(Keychain):
    """Runs a docker credential helper (``docker-credential-<name> get``).

    Args:
        helper: Helper name, e.g. "ecr-login" or "osxkeychain".
        matches: Optional predicate restricting the registries the helper is
            asked about.
    """

    def __init__(
        self, helper: str, matches: Optional[Callable[[str], bool]] = None
    ) -> None:
        self.helper = helper
        self._matches = matches

    def resolve(self, registry: str) -> Optional[Credential]:
        if self._matches is not None and not self._matches(registry):
            return None

        command = [f"docker-credential-{self.helper}", "get"]
        try:
            result = subprocess.run(
                command,
                input=registry,
                capture_output=True,
                text=True,
                timeout=HELPER_TIMEOUT,
                check=True,
            )
            response = json.loads(result.stdout)
        except (OSError, subprocess.SubprocessError, ValueError) as e:
            logger.debug("Credential helper %s failed: %s", self.helper, e)
            return None

        username = response.get("Username", "")
        secret = response.get("Secret", "")
        if not secret:
            return None
        # helpers report identity tokens with this placeholder username
        if username == "<token>":
            return Credential(identity_token=secret)
        return Credential(username=username, password=secret)


class DockerConfigKeychain(Keychain):
    """Reads the container-runtime configuration file.

    Lookup follows the docker command line tool: a per-registry
    ``credHelpers`` entry first, then the global ``credsStore``, then the
    inline ``auths`` entries.

    Args:
        config_dir: Directory containing ``config.json``. Defaults to
            ``$DOCKER_CONFIG`` or ``~/.docker``.
    """

    def __init__(self, config_dir: Optional[str] = None) -> None:
        if config_dir is None:
            config_dir = os.environ.get(
                "DOCKER_CONFIG",
                os.path.join(os.path.expanduser("~"), ".docker"),
            )
        self.config_path = os.path.join(config_dir, "config.json")

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.config_path, encoding="utf-8") as f:
                config = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.debug("Ignoring unreadable %s: %s", self.config_path, e)
            return {}

        if not isinstance(config, dict):
            return {}
        return config

    @staticmethod
    def _config_keys(registry: str) -> List[str]:
        if registry in (DOCKER_HUB_REGISTRY, "index.docker.io"):
            return [DOCKER_HUB_CONFIG_KEY, "index.docker.io", "docker.io"]
        return [registry, f"https://{registry}", f"http://{registry}"]

    def resolve(self, registry: str) -> Optional[Credential]:
        config = self._load()
        keys = self._config_keys(registry)

        helpers = config.get("credHelpers") or {}
        for key in keys:
            if key in helpers:
                return HelperKeychain(helpers[key]).resolve(keys[0])

        store = config.get("credsStore")
        if store:
            return HelperKeychain(store).resolve(keys[0])

        auths = config.get("auths") or {}
        for key in keys:
            entry = auths.get(key)
            if entry:
                return self._parse_entry(entry)

        return None

    @staticmethod
    def _parse_entry(entry: Dict[str, Any]) -> Optional[Credential]:
        if entry.get("registrytoken"):
            return Credential(registry_token=entry["registrytoken"])
        if entry.get("identitytoken"):
            return Credential(identity_token=entry["identitytoken"])

        username = entry.get("username", "")
        password = entry.get("password", "")
        if entry.get("auth"):
            try:
                decoded = base64.b64decode(entry["auth"]).decode("utf-8")
            except ValueError as e:
                logger.debug("Ignoring malformed auth entry: %s", e)
                return None
            username, _, password = decoded.partition(":")

        if not (username or password):
            return None
        return Credential(username=username, password=password)


def is_google_registry(registry: str) -> bool:
    host = registry.split(":")[0]
    return (
        host == "gcr.io"
        or host.endswith(".gcr.io")
        or host.endswith("-docker.pkg.dev")
    )


class GoogleKeychain(Keychain):
    """Uses the access token of the active ``gcloud`` account."""

    def resolve(self, registry: str) -> Optional[Credential]:
        if not is_google_registry(registry):
            return None

        command = ["gcloud", "config", "config-helper", "--format=json"]
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=HELPER_TIMEOUT,
                check=True,
            )
            token = json.loads(result.stdout)["credential"]["access_token"]
        except (
            OSError,
            subprocess.SubprocessError,
            ValueError,
            KeyError,
            TypeError,
        ) as e:
            logger.debug("gcloud credentials unavailable: %s", e)
            return None

        return Credential(username="oauth2accesstoken", password=token)


def is_ecr_registry(registry: str) -> bool:
    return _ECR_HOST.match(registry) is not None


class MultiKeychain(Keychain):
    """Asks each keychain in order and falls back to anonymous access."""

    def __init__(self, *keychains: Keychain) -> None:
        self.keychains = list(keychains)

    def resolve(self, registry: str) -> Credential:
        for keychain in self.keychains:
            credential = keychain.resolve(registry)
            if credential is not None and not credential.is_anonymous:
                logger.debug(
                    "Using %s credentials for %s",
                    type(keychain).__name__,
                    registry,
                )
                return credential

        logger.debug("No credentials for %s, using anonymous access", registry)
        return ANONYMOUS


def default_keychain() -> MultiKeychain:
    """Return the docker config, Google and ECR provider chain."""
    return MultiKeychain(
        DockerConfigKeychain(),
        GoogleKeychain(),
        HelperKeychain("ecr-login", matches=is_ecr_registry),
    )
