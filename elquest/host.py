# elquest/host.py
"""
host.py - local package manager that consumes archives

HostPackageManager keeps its state in the sqlite DB:
  archives(name, location, registered_at, refreshed_at)
  installed_packages(name, version, kind, archive, path, installed_at)

Refreshing an archive copies its `archive-contents` into
<state_dir>/archives/<name>/ and installs read that cached copy. When the
cached copy lacks a package, or the last refresh of the archive failed, the
archive's own `archive-contents` is read instead.
"""

from __future__ import annotations

import shutil
import tarfile
import time
from pathlib import Path
from typing import List, Optional, Set, Tuple

from elquest.archive import ARCHIVE_CONTENTS, ArchiveIndex, artifact_file_name, read_index
from elquest.db import DB, DBError
from elquest.descriptor import HOST_RUNTIME, ArtifactKind, PackageDescriptor, pkg_file_contents
from elquest.errors import ArchiveFormatError, ArchiveRefreshFailure, PackageUnavailable
from elquest.logging import get_logger

logger = get_logger("host")


def _now_ts() -> int:
    return int(time.time())


def _extract_tar(tar_path: Path, dest_dir: Path) -> None:
    dest = dest_dir.resolve()
    with tarfile.open(tar_path, "r:*") as tar:
        for member in tar.getmembers():
            target = (dest / member.name).resolve()
            if target != dest and dest not in target.parents:
                raise PackageUnavailable(tar_path.name, f"unsafe member path {member.name}")
            if member.issym() or member.islnk():
                raise PackageUnavailable(tar_path.name, f"link member {member.name}")
        tar.extractall(dest)


class HostPackageManager:
    def __init__(self, context, db: DB):
        self.context = context
        self.db = db
        self._stale: Set[str] = set()

    @property
    def state_dir(self) -> Path:
        return Path(self.context.state_dir)

    @property
    def package_dir(self) -> Path:
        return Path(self.context.package_dir)

    def cached_contents_path(self, archive: str) -> Path:
        return self.state_dir / "archives" / archive / ARCHIVE_CONTENTS

    # ------------------------
    # Archives
    # ------------------------
    def register_archive_source(self, name: str, location) -> None:
        location = str(Path(location).expanduser())
        self.db.execute(
            "INSERT INTO archives (name, location, registered_at) VALUES (?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET location=excluded.location;",
            (name, location, _now_ts()),
            commit=True,
        )
        logger.debug("archive source %s -> %s", name, location)

    def archives(self) -> List[Tuple[str, str]]:
        return [(r["name"], r["location"]) for r in self.db.fetchall("SELECT name, location FROM archives ORDER BY name;")]

    def _location(self, name: str) -> Path:
        row = self.db.fetchone("SELECT location FROM archives WHERE name = ?;", (name,))
        if row is None:
            raise ArchiveRefreshFailure(f"archive '{name}' is not registered")
        return Path(row["location"])

    def refresh_archive_cache(self, name: str) -> None:
        source = self._location(name) / ARCHIVE_CONTENTS
        target = self.cached_contents_path(name)
        try:
            # reject a corrupt index before it replaces the cached copy
            read_index(source)
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(f".{ARCHIVE_CONTENTS}.tmp")
            shutil.copyfile(source, tmp)
            tmp.replace(target)
            self.db.execute("UPDATE archives SET refreshed_at = ? WHERE name = ?;", (_now_ts(), name), commit=True)
        except (OSError, ArchiveFormatError, DBError) as e:
            self._stale.add(name)
            raise ArchiveRefreshFailure(f"cannot refresh archive '{name}': {e}") from e
        self._stale.discard(name)
        logger.info("refreshed archive %s", name)

    def cached_index(self, name: str) -> ArchiveIndex:
        path = self.cached_contents_path(name)
        if not path.is_file():
            return ArchiveIndex()
        try:
            return read_index(path)
        except (OSError, ArchiveFormatError) as e:
            logger.warning("ignoring unreadable cached index %s: %s", path, e)
            return ArchiveIndex()

    def live_index(self, location) -> ArchiveIndex:
        path = Path(location) / ARCHIVE_CONTENTS
        if not path.is_file():
            return ArchiveIndex()
        try:
            return read_index(path)
        except (OSError, ArchiveFormatError) as e:
            logger.warning("ignoring unreadable archive index %s: %s", path, e)
            return ArchiveIndex()

    def available(self, name: str) -> Optional[Tuple[str, Path, PackageDescriptor]]:
        """Highest version of `name` across registered archives: (archive, location, descriptor)."""
        best = None
        for archive, location in self.archives():
            descriptor = None
            if archive not in self._stale:
                descriptor = self.cached_index(archive).get(name)
            if descriptor is None:
                descriptor = self.live_index(location).get(name)
                if descriptor is not None:
                    logger.debug("%s not in cached view of %s, using the archive index", name, archive)
            if descriptor is None:
                continue
            if best is None or descriptor.version > best[2].version:
                best = (archive, Path(location), descriptor)
        return best

    # ------------------------
    # Packages
    # ------------------------
    def is_installed(self, name: str) -> bool:
        if name == HOST_RUNTIME:
            return True
        row = self.db.fetchone("SELECT 1 FROM installed_packages WHERE name = ?;", (name,))
        return row is not None

    def installed(self) -> List[Tuple[str, str]]:
        return [(r["name"], r["version"]) for r in self.db.fetchall("SELECT name, version FROM installed_packages ORDER BY name;")]

    def install(self, name: str) -> Path:
        found = self.available(name)
        if found is None:
            raise PackageUnavailable(name)
        archive, location, descriptor = found
        artifact = artifact_file_name(location, descriptor)
        if not artifact.is_file():
            raise PackageUnavailable(name, archive)

        dest = self.package_dir / descriptor.full_name
        if dest.exists():
            shutil.rmtree(dest)
        self.package_dir.mkdir(parents=True, exist_ok=True)
        if descriptor.kind is ArtifactKind.SINGLE:
            dest.mkdir()
            shutil.copyfile(artifact, dest / f"{name}.el")
            (dest / f"{name}-pkg.el").write_text(pkg_file_contents(descriptor), encoding="utf-8")
        else:
            _extract_tar(artifact, self.package_dir)
            if not dest.is_dir():
                raise PackageUnavailable(name, f"{archive}: artifact has no {descriptor.full_name}/ directory")

        previous = self.db.fetchone("SELECT path FROM installed_packages WHERE name = ?;", (name,))
        with self.db.transaction() as cur:
            cur.execute(
                "INSERT INTO installed_packages (name, version, kind, archive, path, installed_at) VALUES (?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(name) DO UPDATE SET version=excluded.version, kind=excluded.kind, "
                "archive=excluded.archive, path=excluded.path, installed_at=excluded.installed_at;",
                (name, descriptor.version_string, descriptor.kind.symbol, archive, str(dest), _now_ts()),
            )
        if previous is not None and Path(previous["path"]) != dest:
            shutil.rmtree(previous["path"], ignore_errors=True)
        logger.info("installed %s %s from %s", name, descriptor.version_string, archive)
        return dest

    def uninstall(self, name: str) -> bool:
        row = self.db.fetchone("SELECT path FROM installed_packages WHERE name = ?;", (name,))
        if row is None:
            return False
        shutil.rmtree(row["path"], ignore_errors=True)
        self.db.execute("DELETE FROM installed_packages WHERE name = ?;", (name,), commit=True)
        logger.info("uninstalled %s", name)
        return True
