# elquest/installer.py
"""
installer.py - recursive build-and-install

For a requested package the installer:
  1. returns immediately when the host already has it installed
  2. resolves the recipe, builds it and reads the built descriptor
  3. installs every dependency (except the host runtime) the same way
  4. rewrites the archive index, refreshes the host's cached view of the
     archive and asks the host to install the package

Dependencies are therefore installed before their dependents (C, B, A for
A -> B -> C), and a dependency reached twice through a diamond is built once.
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

from elquest.archive import write_index
from elquest.descriptor import HOST_RUNTIME, PackageDescriptor, extract
from elquest.errors import ArchiveRefreshFailure, BuildIncomplete, DependencyCycle
from elquest.logging import get_logger
from elquest.recipes import Recipe, RecipeCache, RecipeRef, RecipeResolver

logger = get_logger("installer")


class Installer:
    def __init__(self, context, host, resolver: RecipeResolver, orchestrator, cache: Optional[RecipeCache] = None):
        self.context = context
        self.host = host
        self.resolver = resolver
        self.orchestrator = orchestrator
        self.cache = cache

    # ------------------------
    # Install
    # ------------------------
    def install(self, ref: RecipeRef, upgrade: bool = False) -> None:
        self._install(ref, [], upgrade)

    def _install(self, ref: RecipeRef, chain: List[str], force: bool) -> None:
        name = self.resolver.package_name(ref)
        if not force and self.host.is_installed(name):
            logger.debug("%s is already installed", name)
            return
        # installed packages never reach this check
        if name in chain:
            raise DependencyCycle(chain[chain.index(name):] + [name])
        chain.append(name)
        try:
            descriptor = self._build(self.resolver.resolve(ref))
            for dep, _ in descriptor.dependencies:
                if dep == HOST_RUNTIME:
                    continue
                self._install(dep, chain, False)
            self._publish()
            self.host.install(name)
            logger.info("installed %s %s", name, descriptor.version_string)
        finally:
            chain.pop()

    def _build(self, recipe: Recipe) -> PackageDescriptor:
        artifact = self.orchestrator.build(recipe)
        descriptor = extract(artifact)
        if descriptor is None:
            raise BuildIncomplete(recipe.name, f"cannot read descriptor of {artifact}")
        if self.cache is not None:
            self.cache.remember(recipe)
        return descriptor

    def _publish(self) -> Path:
        index_path = write_index(self.context.archive_dir)
        try:
            self.host.refresh_archive_cache(self.context.archive_name)
        except ArchiveRefreshFailure as e:
            logger.warning("archive refresh failed, continuing: %s", e)
        return index_path

    # ------------------------
    # Other entry points
    # ------------------------
    def build_only(self, ref: RecipeRef) -> Path:
        """Build one package into the archive and rewrite the index; nothing is installed."""
        recipe = self.resolver.resolve(ref)
        artifact = self.orchestrator.build(recipe)
        if self.cache is not None:
            self.cache.remember(recipe)
        write_index(self.context.archive_dir)
        return artifact

    def upgrade(self, ref: RecipeRef) -> None:
        name = self.resolver.package_name(ref)
        if isinstance(ref, str) and self.cache is not None and not ref.lstrip().startswith("("):
            cached = self.cache.get(name)
            if cached is not None:
                ref = cached
        self.install(ref, upgrade=True)

    def upgrade_all(self) -> List[str]:
        if self.cache is None:
            return []
        upgraded = []
        for recipe in self.cache.all():
            if not self.host.is_installed(recipe.name):
                continue
            self.install(recipe, upgrade=True)
            upgraded.append(recipe.name)
        return upgraded
