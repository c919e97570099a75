# elquest/descriptor.py
"""
Package descriptors: classification of artifact files and extraction of the
metadata embedded in them.

- single-file packages (`NAME-VERSION.el`) carry their metadata in the
  standard library headers (`;; Version:`, `;; Package-Requires:` ...)
- multi-file packages (`NAME-VERSION.tar`) carry it in the member
  `NAME-VERSION/NAME-pkg.el` as a `define-package` form

`extract()` never raises for a bad artifact: it logs and returns None so one
corrupt file cannot block indexing of an archive directory.
"""

from __future__ import annotations

import io
import os
import re
import tarfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from elquest import sexp
from elquest.errors import DescriptorParseError
from elquest.logging import get_logger
from elquest.sexp import Cons, Symbol

logger = get_logger("descriptor")

Version = Tuple[int, ...]
Requirement = Tuple[str, Version]

# reserved dependency naming the host runtime itself
HOST_RUNTIME = "emacs"


class ArtifactKind(Enum):
    SINGLE = ("el", "single")
    MULTI = ("tar", "tar")

    def __init__(self, extension: str, symbol: str) -> None:
        self.extension = extension
        self.symbol = symbol

    @classmethod
    def from_symbol(cls, symbol: str) -> "ArtifactKind":
        for kind in cls:
            if kind.symbol == symbol:
                return kind
        raise DescriptorParseError(f"unknown package kind '{symbol}'")


def classify(file_name: Union[str, os.PathLike]) -> Optional[ArtifactKind]:
    """SINGLE for *.el, MULTI for *.tar, None for anything else."""
    base = os.path.basename(os.fspath(file_name))
    for kind in ArtifactKind:
        suffix = "." + kind.extension
        if base.endswith(suffix) and len(base) > len(suffix):
            return kind
    return None

# ----------------------------
# Versions
# ----------------------------
def version_to_list(text: Any) -> Version:
    if not isinstance(text, str):
        raise DescriptorParseError(f"version must be a string, got {text!r}")
    parts = text.strip().split(".")
    if not parts or any(not p.isdigit() for p in parts):
        raise DescriptorParseError(f"invalid version string '{text}'")
    return tuple(int(p) for p in parts)


def version_to_string(version: Version) -> str:
    return ".".join(str(v) for v in version)

# ----------------------------
# Descriptor
# ----------------------------
@dataclass(frozen=True)
class PackageDescriptor:
    name: str
    version: Version
    requires: Tuple[Requirement, ...] = ()
    summary: str = ""
    kind: ArtifactKind = ArtifactKind.SINGLE
    extras: Dict[str, Any] = field(default_factory=dict, hash=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise DescriptorParseError("package name is empty")
        if not self.version or any((not isinstance(v, int)) or v < 0 for v in self.version):
            raise DescriptorParseError(f"{self.name}: version must be a non-empty sequence of non-negative integers")
        seen = set()
        for dep, _ in self.requires:
            if dep in seen:
                raise DescriptorParseError(f"{self.name}: duplicate requirement '{dep}'")
            seen.add(dep)

    @property
    def dependencies(self) -> Tuple[Requirement, ...]:
        return self.requires

    @property
    def version_string(self) -> str:
        return version_to_string(self.version)

    @property
    def full_name(self) -> str:
        return f"{self.name}-{self.version_string}"


def _requirement_version(value: Any) -> Version:
    # "2.0" in headers and -pkg.el files, (2 0) in archive-contents
    if isinstance(value, list) and value and all(isinstance(v, int) and not isinstance(v, bool) for v in value):
        return tuple(value)
    return version_to_list(value)


def parse_requires(value: Any) -> Tuple[Requirement, ...]:
    """((dash "2.0") (emacs "25.1")) -> (("dash", (2, 0)), ("emacs", (25, 1)))"""
    value = sexp.unquote(value)
    if not isinstance(value, list):
        raise DescriptorParseError(f"malformed requirement list {value!r}")
    out: List[Requirement] = []
    for item in value:
        if isinstance(item, Symbol):
            out.append((str(item), (0,)))
            continue
        if not isinstance(item, list) or not item or not isinstance(item[0], Symbol):
            raise DescriptorParseError(f"malformed requirement {item!r}")
        version = _requirement_version(item[1]) if len(item) > 1 else (0,)
        out.append((str(item[0]), version))
    return tuple(out)


def requires_to_sexp(requires: Tuple[Requirement, ...]) -> List[Any]:
    return [[Symbol(name), list(version)] for name, version in requires]

# ----------------------------
# Single-file format
# ----------------------------
_FIRST_LINE_RE = re.compile(r"^;;;\s*(?P<file>\S+?)\.el\s+---\s*(?P<summary>.*?)\s*(?:-\*-.*-\*-\s*)?$")
_HEADER_RE = re.compile(r"^;+\s*(?P<key>[A-Za-z][A-Za-z0-9-]*)\s*:\s*(?P<val>.*?)\s*$")
_CONTINUATION_RE = re.compile(r"^;+\s+(?P<val>\S.*?)\s*$")
_AUTHOR_RE = re.compile(r"^(?P<name>[^<]*?)\s*<(?P<email>[^>]+)>")
_HEADER_END_MARKERS = (";;; commentary", ";;; code")


def _paren_depth(text: str) -> int:
    depth, in_str, esc = 0, False, False
    for c in text:
        if esc:
            esc = False
        elif c == "\\":
            esc = True
        elif c == '"':
            in_str = not in_str
        elif not in_str:
            depth += (c == "(") - (c == ")")
    return depth


def read_headers(text: str) -> Dict[str, str]:
    """Lower-cased header name -> value, from the header block of a .el file."""
    headers: Dict[str, str] = {}
    lines = text.splitlines()
    i = 0
    while i < len(lines):
        line = lines[i]
        if line.lower().startswith(_HEADER_END_MARKERS):
            break
        if line.strip() and not line.lstrip().startswith(";"):
            break
        m = _HEADER_RE.match(line)
        if m and i > 0:
            key, val = m.group("key").lower(), m.group("val")
            # Package-Requires may continue over several comment lines
            while key == "package-requires" and _paren_depth(val) > 0 and i + 1 < len(lines):
                cont = _CONTINUATION_RE.match(lines[i + 1])
                if not cont:
                    break
                val = f"{val} {cont.group('val')}"
                i += 1
            headers.setdefault(key, val)
        i += 1
    return headers


def _person(value: str) -> Any:
    m = _AUTHOR_RE.match(value.strip())
    if m:
        return Cons(m.group("name").strip(), m.group("email").strip())
    return [value.strip()]


class DescriptorParser:
    """Reads the descriptor embedded in one kind of artifact."""

    kind: ArtifactKind

    def parse(self, data: bytes) -> PackageDescriptor:
        raise NotImplementedError


class SingleFileParser(DescriptorParser):
    kind = ArtifactKind.SINGLE

    def parse(self, data: bytes) -> PackageDescriptor:
        text = data.decode("utf-8")
        first = text.split("\n", 1)[0]
        m = _FIRST_LINE_RE.match(first)
        if not m:
            raise DescriptorParseError("missing ';;; NAME.el --- SUMMARY' first line")
        headers = read_headers(text)
        version_text = headers.get("package-version") or headers.get("version")
        if not version_text:
            raise DescriptorParseError(f"{m.group('file')}: no Version header")
        requires: Tuple[Requirement, ...] = ()
        if headers.get("package-requires"):
            try:
                requires = parse_requires(sexp.read_first(headers["package-requires"]))
            except sexp.SexpError as e:
                raise DescriptorParseError(f"bad Package-Requires header: {e}") from e

        extras: Dict[str, Any] = {}
        url = headers.get("url") or headers.get("homepage")
        if url:
            extras[Symbol(":url")] = url
        if headers.get("keywords"):
            words = [w for w in re.split(r"[,\s]+", headers["keywords"]) if w]
            if words:
                extras[Symbol(":keywords")] = words
        if headers.get("author"):
            extras[Symbol(":authors")] = [_person(headers["author"])]
        if headers.get("maintainer"):
            extras[Symbol(":maintainer")] = _person(headers["maintainer"])
        return PackageDescriptor(
            name=m.group("file"),
            version=version_to_list(version_text),
            requires=requires,
            summary=m.group("summary"),
            kind=self.kind,
            extras=extras,
        )

# ----------------------------
# Multi-file format
# ----------------------------
def _find_pkg_member(tar: tarfile.TarFile) -> tarfile.TarInfo:
    for member in tar.getmembers():
        parts = member.name.strip("/").split("/")
        if len(parts) != 2 or not member.isfile():
            continue
        top, base = parts
        if base.endswith("-pkg.el") and top.startswith(base[: -len("-pkg.el")] + "-"):
            return member
    raise DescriptorParseError("archive has no NAME-VERSION/NAME-pkg.el member")


def parse_define_package(form: Any, kind: ArtifactKind = ArtifactKind.MULTI) -> PackageDescriptor:
    if not isinstance(form, list) or len(form) < 3 or form[0] != "define-package" or not isinstance(form[0], Symbol):
        raise DescriptorParseError("expected a (define-package NAME VERSION ...) form")
    name, version = form[1], form[2]
    if not isinstance(name, str) or isinstance(name, Symbol):
        raise DescriptorParseError(f"package name must be a string, got {name!r}")
    summary = form[3] if len(form) > 3 else ""
    if summary == []:
        summary = ""
    if not isinstance(summary, str):
        raise DescriptorParseError(f"{name}: summary must be a string")
    requires = parse_requires(form[4]) if len(form) > 4 else ()
    try:
        props = sexp.plist_to_dict(form[5:])
    except sexp.SexpError as e:
        raise DescriptorParseError(f"{name}: {e}") from e
    extras = {key: sexp.unquote(val) for key, val in props.items() if key != ":kind"}
    return PackageDescriptor(
        name=name,
        version=version_to_list(version),
        requires=requires,
        summary=summary,
        kind=kind,
        extras=extras,
    )


class TarParser(DescriptorParser):
    kind = ArtifactKind.MULTI

    def parse(self, data: bytes) -> PackageDescriptor:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            member = _find_pkg_member(tar)
            fh = tar.extractfile(member)
            if fh is None:
                raise DescriptorParseError(f"cannot read {member.name}")
            content = fh.read().decode("utf-8")
        return parse_define_package(sexp.read_first(content), self.kind)


def pkg_file_contents(descriptor: PackageDescriptor) -> str:
    """Text of NAME-pkg.el for a multi-file package."""
    form: List[Any] = [
        Symbol("define-package"),
        descriptor.name,
        descriptor.version_string,
        descriptor.summary,
        [sexp.QUOTE, [[Symbol(n), version_to_string(v)] for n, v in descriptor.requires]] if descriptor.requires else [],
    ]
    for key, val in descriptor.extras.items():
        form.append(Symbol(key))
        form.append([sexp.QUOTE, val] if isinstance(val, (list, Cons)) and val else val)
    return f";;; Generated package description from {descriptor.name}.el  -*- no-byte-compile: t -*-\n{sexp.dumps(form)}\n"

# ----------------------------
# Dispatch
# ----------------------------
_PARSERS = {
    ArtifactKind.SINGLE: SingleFileParser(),
    ArtifactKind.MULTI: TarParser(),
}


def parser_for(kind: ArtifactKind) -> DescriptorParser:
    return _PARSERS[kind]


def extract(path: Union[str, os.PathLike]) -> Optional[PackageDescriptor]:
    p = Path(path)
    kind = classify(p.name)
    if kind is None:
        logger.debug("not a package artifact: %s", p)
        return None
    try:
        return parser_for(kind).parse(p.read_bytes())
    except (OSError, tarfile.TarError, UnicodeDecodeError, sexp.SexpError, DescriptorParseError) as e:
        logger.warning("cannot read package descriptor from %s: %s", p, e)
        return None
