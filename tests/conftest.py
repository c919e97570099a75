import io
import tarfile
from pathlib import Path

import pytest

from elquest import config
from elquest.bootstrap import Context
from elquest.db import open_db
from elquest.descriptor import ArtifactKind, PackageDescriptor, pkg_file_contents, version_to_list
from elquest.errors import ArchiveRefreshFailure, PackageUnavailable


@pytest.fixture(autouse=True)
def test_env(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ELQUEST_CONFIG", raising=False)
    config.reset()
    config.load(overrides={
        "db": {"path": str(tmp_path / "state.sqlite3")},
        "archive": {"dir": str(tmp_path / "archive")},
        "build": {"dir": str(tmp_path / "build")},
        "recipes": {"dir": str(tmp_path / "melpa"), "remote": None, "update": False},
        "host": {"state_dir": str(tmp_path / "host"), "package_dir": str(tmp_path / "elpa")},
    })
    yield
    config.reset()


@pytest.fixture
def context(tmp_path: Path) -> Context:
    return Context(
        archive_name="local",
        archive_dir=tmp_path / "archive",
        build_dir=tmp_path / "build",
        recipes_dir=tmp_path / "melpa",
        state_dir=tmp_path / "host",
        package_dir=tmp_path / "elpa",
        update_recipes=False,
    )


@pytest.fixture
def db(tmp_path: Path):
    d = open_db(tmp_path / "state.sqlite3")
    yield d
    d.close()


def el_source(name, version, requires=(), summary="A test package", extra_headers=""):
    reqs = ""
    if requires:
        reqs = ";; Package-Requires: (" + " ".join(f'({d} "{v}")' for d, v in requires) + ")\n"
    return (
        f";;; {name}.el --- {summary}  -*- lexical-binding: t -*-\n"
        f";; Author: Jane Doe <jane@example.com>\n"
        f";; Version: {version}\n"
        f"{reqs}{extra_headers}"
        f";;; Commentary:\n;; Nothing.\n;;; Code:\n(provide '{name})\n;;; {name}.el ends here\n"
    )


def write_single(directory: Path, name, version, requires=(), summary="A test package") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}-{version}.el"
    path.write_text(el_source(name, version, requires, summary), encoding="utf-8")
    return path


def write_tar(directory: Path, name, version, requires=(), summary="A multi-file package") -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    descriptor = PackageDescriptor(
        name=name,
        version=version_to_list(version),
        requires=tuple((d, version_to_list(v)) for d, v in requires),
        summary=summary,
        kind=ArtifactKind.MULTI,
    )
    path = directory / f"{name}-{version}.tar"
    members = {
        f"{name}-{version}/{name}-pkg.el": pkg_file_contents(descriptor),
        f"{name}-{version}/{name}.el": el_source(name, version, requires, summary),
        f"{name}-{version}/{name}-extra.el": f"(provide '{name}-extra)\n",
    }
    with tarfile.open(path, "w") as tar:
        for arcname, text in members.items():
            data = text.encode("utf-8")
            info = tarfile.TarInfo(arcname)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return path


class FakeBackend:
    """Build backend producing single-file artifacts from a table of packages."""

    def __init__(self, packages):
        # name -> (version, [(dep, version)])
        self.packages = packages
        self.checkouts = []
        self.workspaces = []

    def checkout(self, name, recipe, workspace):
        self.checkouts.append(name)
        self.workspaces.append(Path(workspace))
        Path(workspace).mkdir(parents=True, exist_ok=True)
        (Path(workspace) / f"{name}.el").write_text("stale", encoding="utf-8")
        return self.packages[name][0]

    def build_package(self, name, version, file_rules, workspace, output_dir):
        _, requires = self.packages[name]
        return write_single(Path(output_dir), name, version, requires)


class FakeHost:
    def __init__(self, installed=()):
        self.installed_names = set(installed)
        self.install_calls = []
        self.refreshed = []
        self.registered = []
        self.fail_refresh = False
        self.seen_index = {}

    def is_installed(self, name):
        return name == "emacs" or name in self.installed_names

    def register_archive_source(self, name, location):
        self.registered.append((name, Path(location)))

    def refresh_archive_cache(self, name):
        if self.fail_refresh:
            raise ArchiveRefreshFailure(f"cannot refresh {name}")
        self.refreshed.append(name)

    def install(self, name):
        if name not in self.available():
            raise PackageUnavailable(name)
        self.install_calls.append(name)
        self.installed_names.add(name)

    def available(self):
        from elquest.archive import read_index

        if not self.registered:
            return set()
        return set(read_index(self.registered[-1][1] / "archive-contents").entries)

    def installed(self):
        return [(n, "") for n in sorted(self.installed_names)]
