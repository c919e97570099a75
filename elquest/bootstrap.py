# elquest/bootstrap.py
"""
Bootstrap and the single install-or-build entry point.

A Context is created once by the caller and passed to every operation; it
carries the archive and recipe locations and remembers whether init() has
already run for it.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from elquest import config as config_mod
from elquest.buildsystem import BuildOrchestrator, PackageBuilder
from elquest.db import DB, open_db
from elquest.host import HostPackageManager
from elquest.installer import Installer
from elquest.logging import get_logger
from elquest.recipes import RecipeCache, RecipeRef, RecipeRepository, RecipeResolver

logger = get_logger("bootstrap")


@dataclass
class Context:
    archive_name: str
    archive_dir: Path
    build_dir: Path
    recipes_dir: Path
    recipes_remote: Optional[str] = None
    recipes_branch: str = "master"
    state_dir: Optional[Path] = None
    package_dir: Optional[Path] = None
    update_recipes: bool = True
    initialized: bool = False

    @classmethod
    def from_config(cls, cfg: Optional[config_mod.Config] = None) -> "Context":
        cfg = cfg or config_mod.get_config()
        return cls(
            archive_name=cfg.get("archive.name"),
            archive_dir=Path(cfg.get("archive.dir")),
            build_dir=Path(cfg.get("build.dir")),
            recipes_dir=Path(cfg.get("recipes.dir")),
            recipes_remote=cfg.get("recipes.remote"),
            recipes_branch=cfg.get("recipes.branch", "master"),
            state_dir=Path(cfg.get("host.state_dir")),
            package_dir=Path(cfg.get("host.package_dir")),
            update_recipes=bool(cfg.get("recipes.update", True)),
        )

    def repository(self) -> RecipeRepository:
        return RecipeRepository(self.recipes_dir, self.recipes_remote, self.recipes_branch)


def init(context: Context, host, repository: Optional[RecipeRepository] = None) -> None:
    """Register the archive with the host and prepare the recipe checkout, once per context."""
    if context.initialized:
        return
    host.register_archive_source(context.archive_name, context.archive_dir)
    Path(context.archive_dir).mkdir(parents=True, exist_ok=True)
    repository = repository or context.repository()
    if context.update_recipes or not repository.is_checked_out():
        repository.ensure_checkout(update=context.update_recipes)
    context.initialized = True
    logger.debug("initialized archive %s at %s", context.archive_name, context.archive_dir)


def make_installer(context: Context, db: Optional[DB] = None, backend: Optional[PackageBuilder] = None,
                   host=None, repository: Optional[RecipeRepository] = None) -> Installer:
    cfg = config_mod.get_config()
    db = db or open_db()
    host = host or HostPackageManager(context, db)
    repository = repository or context.repository()
    backend = backend or PackageBuilder(timeout=int(cfg.get("build.timeout", 600)), stable=bool(cfg.get("build.stable", False)))
    return Installer(context, host, RecipeResolver(repository), BuildOrchestrator(context, backend), RecipeCache(db))


def install_or_build(ref: RecipeRef, context: Optional[Context] = None, installer: Optional[Installer] = None,
                     upgrade: bool = False) -> Installer:
    """Bootstrap, then install `ref` and its dependencies. Returns the installer used."""
    context = context or Context.from_config()
    installer = installer or make_installer(context)
    init(context, installer.host, installer.resolver.repository)
    installer.install(ref, upgrade=upgrade)
    return installer
