# elquest/errors.py
"""elquest exception hierarchy.

Fatal errors abort the install chain that raised them. The extractor and the
installer recover locally from DescriptorParseError and ArchiveRefreshFailure.
"""

from __future__ import annotations

from typing import Iterable


class ElquestError(Exception):
    """Base exception for all elquest errors."""


class ConfigError(ElquestError):
    """Invalid or missing configuration."""


class RecipeNotFound(ElquestError):
    def __init__(self, name: str) -> None:
        super().__init__(f"no recipe found for package '{name}'")
        self.name = name


class BuildBackendError(ElquestError):
    """The checkout or packaging step failed."""


class BuildIncomplete(ElquestError):
    def __init__(self, name: str, reason: str = "") -> None:
        msg = f"build of '{name}' did not produce an indexable package"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.name = name
        self.reason = reason


class DependencyCycle(ElquestError):
    def __init__(self, chain: Iterable[str]) -> None:
        self.chain = list(chain)
        super().__init__("dependency cycle: " + " -> ".join(self.chain))


class DescriptorParseError(ElquestError):
    """Artifact metadata could not be parsed."""


class ArchiveRefreshFailure(ElquestError):
    """The host could not refresh its cached view of an archive."""


class PackageUnavailable(ElquestError):
    def __init__(self, name: str, archive: str = "") -> None:
        where = f" in archive '{archive}'" if archive else ""
        super().__init__(f"package '{name}' is not available{where}")
        self.name = name
        self.archive = archive


class ArchiveFormatError(ElquestError):
    """archive-contents is not a version-1 archive index."""
