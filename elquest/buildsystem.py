# elquest/buildsystem.py
"""
buildsystem.py - build engine for elquest

Two layers:

  PackageBuilder      fetches recipe sources into a workspace and packages
                      the selected files into an archive artifact
  BuildOrchestrator   runs one build in a clean workspace and reports the
                      artifact path that the archive index will list

    builder = PackageBuilder(timeout=600)
    orchestrator = BuildOrchestrator(context, builder)
    path = orchestrator.build(recipe)   # ~/.elquest/packages/foo-20240101.1200.el

File rules follow the recipe `:files` syntax:

    "*.el"                         glob relative to the checkout, placed at top level
    ("snippets" "snippets/*")      files placed under the named subdirectory
    (:exclude "*-test.el")         drop previously selected files
    :defaults                      the default rule list, spliced in place
"""

from __future__ import annotations

import dataclasses
import fnmatch
import io
import os
import re
import shutil
import tarfile
import time
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

from elquest import sexp
from elquest.archive import artifact_file_name
from elquest.descriptor import (
    ArtifactKind,
    PackageDescriptor,
    SingleFileParser,
    extract,
    parse_define_package,
    pkg_file_contents,
    read_headers,
    version_to_list,
    version_to_string,
)
from elquest.errors import BuildBackendError, BuildIncomplete, DescriptorParseError
from elquest.logging import get_logger
from elquest.process import safe_run
from elquest.recipes import Recipe
from elquest.sexp import Symbol

logger = get_logger("buildsystem")

DEFAULT_FILES: List[Any] = [
    "*.el", "lisp/*.el",
    "dir", "*.info", "*.texi", "*.texinfo",
    "doc/dir", "doc/*.info", "doc/*.texi", "doc/*.texinfo",
    "docs/dir", "docs/*.info", "docs/*.texi", "docs/*.texinfo",
    [Symbol(":exclude"), ".dir-locals.el", "lisp/.dir-locals.el",
     "test.el", "tests.el", "*-test.el", "*-tests.el",
     "lisp/test.el", "lisp/tests.el", "lisp/*-test.el", "lisp/*-tests.el"],
]

_VERSION_HEADER_RE = re.compile(r"^(;+\s*(?:Package-)?Version\s*:\s*)(\S.*?)\s*$", re.IGNORECASE | re.MULTILINE)

# --- helpers ---
def _timestamp_version(ts: float) -> str:
    return time.strftime("%Y%m%d.%H%M", time.gmtime(ts))


def rewrite_version_header(text: str, version: str) -> str:
    """Set the Version header of an .el file, inserting one after the first line if absent."""
    if _VERSION_HEADER_RE.search(text):
        return _VERSION_HEADER_RE.sub(lambda m: m.group(1) + version, text)
    first, sep, rest = text.partition("\n")
    return f"{first}\n;; Version: {version}\n{rest}" if sep else f"{first}\n;; Version: {version}\n"

# ----------------------------
# File rules
# ----------------------------
def _glob(workspace: Path, pattern: str) -> List[str]:
    out = []
    for path in sorted(workspace.glob(pattern)):
        rel = path.relative_to(workspace).as_posix()
        if rel.startswith(".git/") or rel == ".git":
            continue
        if path.is_file() or path.is_dir():
            out.append(rel)
    return out


def expand_file_rules(workspace: Path, rules: Optional[Sequence[Any]] = None, prefix: str = "") -> Dict[str, str]:
    """
    Expand recipe file rules against `workspace`.
    Returns {source relative path: destination relative path}, in selection order.
    """
    if rules is None:
        rules = DEFAULT_FILES
    selected: Dict[str, str] = {}
    for rule in rules:
        if isinstance(rule, Symbol) and rule == ":defaults":
            selected.update(expand_file_rules(workspace, DEFAULT_FILES, prefix))
        elif isinstance(rule, str) and not isinstance(rule, Symbol):
            for rel in _glob(workspace, rule):
                selected[rel] = f"{prefix}{os.path.basename(rel)}"
        elif isinstance(rule, list) and rule and rule[0] == ":exclude" and isinstance(rule[0], Symbol):
            patterns = [str(p) for p in rule[1:]]
            for src in list(selected):
                if any(fnmatch.fnmatchcase(src, p) for p in patterns):
                    del selected[src]
        elif isinstance(rule, list) and rule and isinstance(rule[0], str) and not isinstance(rule[0], Symbol):
            subdir = rule[0].strip("/")
            selected.update(expand_file_rules(workspace, rule[1:], f"{prefix}{subdir}/"))
        else:
            raise BuildBackendError(f"unsupported file rule {sexp.dumps(rule)}")
    return selected

# ----------------------------
# PackageBuilder
# ----------------------------
class PackageBuilder:
    """Default build backend: git/github/gitlab/file fetchers and el/tar packaging."""

    def __init__(self, timeout: int = 600, stable: bool = False):
        self.timeout = timeout
        self.stable = stable

    # --- checkout ---
    def checkout(self, name: str, recipe: Recipe, workspace: Path) -> str:
        workspace = Path(workspace)
        if recipe.fetcher == "file":
            version = self._checkout_file(recipe, workspace)
        else:
            version = self._checkout_git(recipe, workspace)
        if self.stable:
            version = self._stable_version(name, workspace)
        logger.info("checked out %s version %s", name, version)
        return version

    def _git(self, args: List[str], cwd: Optional[Path] = None) -> str:
        rc, out, err = safe_run(["git", *args], cwd=cwd, timeout=self.timeout)
        if rc != 0:
            raise BuildBackendError(f"git {' '.join(args)} failed ({rc}): {err.strip()}")
        return out

    def _checkout_git(self, recipe: Recipe, workspace: Path) -> str:
        url = recipe.source_url
        if (workspace / ".git").exists():
            self._git(["fetch", "--tags", "origin"], cwd=workspace)
            if recipe.commit:
                ref = recipe.commit
            else:
                ref = f"origin/{recipe.branch}" if recipe.branch else "origin/HEAD"
            self._git(["reset", "--hard", ref], cwd=workspace)
        else:
            workspace.parent.mkdir(parents=True, exist_ok=True)
            cmd = ["clone"]
            if not recipe.commit:
                cmd += ["--depth", "1"]
            if recipe.branch:
                cmd += ["--branch", recipe.branch]
            self._git(cmd + [url, str(workspace)])
            if recipe.commit:
                self._git(["checkout", "--detach", recipe.commit], cwd=workspace)
        stamp = self._git(["log", "-1", "--format=%ct"], cwd=workspace).strip()
        try:
            return _timestamp_version(int(stamp))
        except ValueError as e:
            raise BuildBackendError(f"cannot read commit time of {url}: {stamp!r}") from e

    def _checkout_file(self, recipe: Recipe, workspace: Path) -> str:
        src = Path(os.path.expandvars(os.path.expanduser(recipe.url or "")))
        if not src.exists():
            raise BuildBackendError(f"local source {src} does not exist")
        if workspace.exists():
            shutil.rmtree(workspace)
        if src.is_dir():
            shutil.copytree(src, workspace, ignore=shutil.ignore_patterns(".git"))
        else:
            workspace.mkdir(parents=True)
            shutil.copy2(src, workspace / src.name)
        mtimes = [p.stat().st_mtime for p in workspace.rglob("*") if p.is_file()]
        if not mtimes:
            raise BuildBackendError(f"local source {src} contains no files")
        return _timestamp_version(max(mtimes))

    def _stable_version(self, name: str, workspace: Path) -> str:
        for candidate in (workspace / f"{name}.el", workspace / "lisp" / f"{name}.el"):
            if candidate.is_file():
                headers = read_headers(candidate.read_text(encoding="utf-8"))
                version = headers.get("package-version") or headers.get("version")
                if version:
                    return version
        raise BuildBackendError(f"{name}: stable build requested but no Version header found")

    # --- packaging ---
    def build_package(self, name: str, version: str, file_rules: Optional[Sequence[Any]], workspace: Path, output_dir: Path) -> Path:
        workspace, output_dir = Path(workspace), Path(output_dir)
        try:
            version = version_to_string(version_to_list(version))
        except DescriptorParseError as e:
            raise BuildBackendError(f"{name}: {e}") from e
        files = expand_file_rules(workspace, file_rules)
        files = {src: dest for src, dest in files.items() if os.path.basename(dest) != f"{name}-pkg.el"}
        if not files:
            raise BuildBackendError(f"{name}: no files matched in {workspace}")
        output_dir.mkdir(parents=True, exist_ok=True)
        sources = list(files)
        if len(files) == 1 and sources[0].endswith(".el") and (workspace / sources[0]).is_file():
            return self._build_single(name, version, workspace / sources[0], output_dir)
        return self._build_multi(name, version, files, workspace, output_dir)

    def _build_single(self, name: str, version: str, source: Path, output_dir: Path) -> Path:
        if source.name != f"{name}.el":
            raise BuildBackendError(f"{name}: single file package must be {name}.el, got {source.name}")
        text = rewrite_version_header(source.read_text(encoding="utf-8"), version)
        target = output_dir / f"{name}-{version}.el"
        target.write_text(text, encoding="utf-8")
        logger.info("built single-file package %s", target)
        return target

    def _descriptor(self, name: str, version: str, files: Dict[str, str], workspace: Path) -> PackageDescriptor:
        pkg_file = next((workspace / s for s in _pkg_candidates(name) if (workspace / s).is_file()), None)
        if pkg_file is not None:
            try:
                d = parse_define_package(sexp.read_first(pkg_file.read_text(encoding="utf-8")))
            except (sexp.SexpError, DescriptorParseError) as e:
                raise BuildBackendError(f"{name}: unreadable {pkg_file.name}: {e}") from e
        else:
            main = next((workspace / src for src, dest in files.items() if dest == f"{name}.el"), None)
            if main is None:
                raise BuildBackendError(f"{name}: no {name}.el or {name}-pkg.el among the package files")
            text = rewrite_version_header(main.read_text(encoding="utf-8"), version)
            try:
                d = SingleFileParser().parse(text.encode("utf-8"))
            except (UnicodeDecodeError, DescriptorParseError) as e:
                raise BuildBackendError(f"{name}: cannot read headers of {main.name}: {e}") from e
        return dataclasses.replace(d, name=name, version=version_to_list(version), kind=ArtifactKind.MULTI)

    def _build_multi(self, name: str, version: str, files: Dict[str, str], workspace: Path, output_dir: Path) -> Path:
        descriptor = self._descriptor(name, version, files, workspace)
        top = descriptor.full_name
        target = output_dir / f"{top}.tar"
        tmp = output_dir / f".{top}.tar.partial"
        try:
            with tarfile.open(tmp, "w") as tar:
                for src, dest in files.items():
                    tar.add(str(workspace / src), arcname=f"{top}/{dest}")
                data = pkg_file_contents(descriptor).encode("utf-8")
                info = tarfile.TarInfo(f"{top}/{name}-pkg.el")
                info.size = len(data)
                info.mtime = int(time.time())
                info.mode = 0o644
                tar.addfile(info, io.BytesIO(data))
            os.replace(tmp, target)
        except (OSError, tarfile.TarError) as e:
            tmp.unlink(missing_ok=True)
            raise BuildBackendError(f"{name}: cannot write {target}: {e}") from e
        logger.info("built multi-file package %s (%d files)", target, len(files))
        return target


def _pkg_candidates(name: str) -> Tuple[str, ...]:
    return (f"{name}-pkg.el", f"lisp/{name}-pkg.el")

# ----------------------------
# BuildOrchestrator
# ----------------------------
class BuildOrchestrator:
    """Runs a single recipe build in a fresh workspace under context.build_dir."""

    def __init__(self, context, backend: Optional[PackageBuilder] = None):
        self.context = context
        self.backend = backend or PackageBuilder()

    def workspace_for(self, recipe: Recipe) -> Path:
        return Path(self.context.build_dir) / recipe.name

    def build(self, recipe: Recipe) -> Path:
        name = recipe.name
        workspace = self.workspace_for(recipe)
        try:
            shutil.rmtree(workspace)
        except OSError as e:
            logger.debug("workspace cleanup of %s: %s", workspace, e)
        archive_dir = Path(self.context.archive_dir)
        try:
            version = self.backend.checkout(name, recipe, workspace)
            produced = self.backend.build_package(name, version, recipe.files, workspace, archive_dir)
        except (BuildBackendError, OSError, UnicodeDecodeError) as e:
            logger.error("build of %s failed: %s", name, e)
            raise BuildIncomplete(name, str(e)) from e
        descriptor = extract(produced) if produced else None
        if descriptor is None:
            raise BuildIncomplete(name, f"no readable package at {produced}")
        path = artifact_file_name(archive_dir, descriptor)
        if not path.is_file():
            raise BuildIncomplete(name, f"expected artifact {path} is missing")
        logger.info("built %s %s -> %s", descriptor.name, descriptor.version_string, path)
        return path
