"""
Source of the full list of npm package names.

The list comes from the all-the-package-names package, which republishes
the registry's name list regularly as a names.json file. Rather than
installing it, we read the latest tarball straight from the registry.
"""

import io
import json
import logging
import tarfile
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import httpx

from download_counts.shared.constants import DEFAULT_TIMEOUT, NAMES_PACKAGE, NPM_REGISTRY
from download_counts.shared.errors import NameSourceError
from download_counts.shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)

NAMES_MEMBER = "package/names.json"


def _validate_names(names) -> list[str]:
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise NameSourceError("Package name list must be a JSON array of strings")
    return names


class NameSource(ABC):
    @abstractmethod
    def get_names(self) -> list[str]:
        """Every known package name, in source order."""


class FileNameSource(NameSource):
    """Names from a local JSON array."""

    def __init__(self, path: str):
        self.path = Path(path)

    def get_names(self) -> list[str]:
        try:
            names = json.loads(self.path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise NameSourceError(f"Could not read names from {self.path}: {e}") from e
        return _validate_names(names)


class RegistryNameSource(NameSource):
    """Names from the latest all-the-package-names release on the registry."""

    def __init__(
        self,
        registry: str = NPM_REGISTRY,
        package: str = NAMES_PACKAGE,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.registry = registry
        self.package = package
        self.transport = transport

    def _tarball_url(self, client: httpx.Client) -> tuple[str, str]:
        resp = client.get(f"{self.registry}/{self.package}/latest")
        resp.raise_for_status()
        data = resp.json()
        return data["version"], data["dist"]["tarball"]

    def get_names(self) -> list[str]:
        start = time.time()
        try:
            with httpx.Client(
                timeout=DEFAULT_TIMEOUT * 4, follow_redirects=True, transport=self.transport
            ) as client:
                version, tarball_url = self._tarball_url(client)
                resp = client.get(tarball_url)
                resp.raise_for_status()
        except (httpx.HTTPError, KeyError, ValueError) as e:
            log_external_call(
                logger, "npm-registry", f"fetch {self.package}", False,
                (time.time() - start) * 1000, error=str(e),
            )
            raise NameSourceError(f"Could not download {self.package}: {e}") from e

        log_external_call(
            logger, "npm-registry", f"fetch {self.package}@{version}", True,
            (time.time() - start) * 1000,
        )
        names = self._read_names(resp.content)
        logger.info(
            f"Loaded {len(names)} package names from {self.package}@{version}",
            extra={"names_version": version, "name_count": len(names)},
        )
        return names

    def _read_names(self, tarball: bytes) -> list[str]:
        try:
            with tarfile.open(fileobj=io.BytesIO(tarball), mode="r:gz") as tar:
                member = tar.extractfile(NAMES_MEMBER)
                if member is None:
                    raise NameSourceError(f"{NAMES_MEMBER} is not a regular file")
                names = json.loads(member.read())
        except (tarfile.TarError, KeyError, json.JSONDecodeError) as e:
            raise NameSourceError(f"Could not read {NAMES_MEMBER}: {e}") from e
        return _validate_names(names)


def create_name_source(names_file: Optional[str] = None) -> NameSource:
    if names_file:
        return FileNameSource(names_file)
    return RegistryNameSource()
