# elquest/archive.py
"""
Local package archive: artifact naming and the `archive-contents` index.

The index is always rebuilt from a full scan of the archive directory, so a
lost or truncated index can be regenerated from the artifacts alone.

Index file format (version 1):

    (1
     (NAME . [(1 2) ((dep (1 0))) "summary" single ((:url . "..."))])
     ...)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from elquest import sexp
from elquest.descriptor import (
    ArtifactKind,
    PackageDescriptor,
    classify,
    extract,
    requires_to_sexp,
    version_to_string,
)
from elquest.errors import ArchiveFormatError, DescriptorParseError
from elquest.logging import get_logger
from elquest.sexp import Cons, Symbol, Vector

logger = get_logger("archive")

ARCHIVE_FORMAT_VERSION = 1
ARCHIVE_CONTENTS = "archive-contents"


def artifact_file_name(archive_dir: Union[str, os.PathLike], descriptor: PackageDescriptor) -> Path:
    """<archive_dir>/<name>-<dotted version>.<el|tar>"""
    return Path(archive_dir) / f"{descriptor.name}-{version_to_string(descriptor.version)}.{descriptor.kind.extension}"

# ----------------------------
# Index model
# ----------------------------
@dataclass(frozen=True)
class ArchiveEntry:
    name: str
    descriptor: PackageDescriptor

    @classmethod
    def from_descriptor(cls, descriptor: PackageDescriptor) -> "ArchiveEntry":
        return cls(descriptor.name, descriptor)

    def to_sexp(self) -> Cons:
        d = self.descriptor
        extras = [Cons(Symbol(k), v) for k, v in d.extras.items()]
        return Cons(Symbol(self.name), Vector([
            list(d.version),
            requires_to_sexp(d.requires),
            d.summary,
            Symbol(d.kind.symbol),
            extras,
        ]))

    @classmethod
    def from_sexp(cls, value: Any) -> "ArchiveEntry":
        if not isinstance(value, Cons) or not isinstance(value.car, Symbol) or not isinstance(value.cdr, Vector):
            raise ArchiveFormatError(f"malformed archive entry {sexp.dumps(value) if value is not None else value}")
        vec = value.cdr
        if len(vec) < 4:
            raise ArchiveFormatError(f"archive entry for {value.car} is too short")
        version, requires, summary, kind = vec[0], vec[1], vec[2], vec[3]
        extras_value = vec[4] if len(vec) > 4 else []
        try:
            descriptor = PackageDescriptor(
                name=str(value.car),
                version=tuple(version),
                requires=tuple((str(n), tuple(v)) for n, v in requires) if requires else (),
                summary=summary if isinstance(summary, str) else "",
                kind=ArtifactKind.from_symbol(str(kind)),
                extras={Symbol(k): v for k, v in sexp.alist_items(extras_value)},
            )
        except (DescriptorParseError, sexp.SexpError, TypeError, ValueError) as e:
            raise ArchiveFormatError(f"bad archive entry for {value.car}: {e}") from e
        return cls(str(value.car), descriptor)


@dataclass
class ArchiveIndex:
    entries: Dict[str, ArchiveEntry] = field(default_factory=dict)
    format_version: int = ARCHIVE_FORMAT_VERSION

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, name: str) -> bool:
        return name in self.entries

    def get(self, name: str) -> Optional[PackageDescriptor]:
        entry = self.entries.get(name)
        return entry.descriptor if entry else None

    def descriptors(self) -> List[PackageDescriptor]:
        return [self.entries[n].descriptor for n in sorted(self.entries)]

# ----------------------------
# Build / serialize / parse
# ----------------------------
def build_index(directory: Union[str, os.PathLike]) -> ArchiveIndex:
    """
    Scan the regular files directly under `directory`. Files that are not
    artifacts or whose descriptor cannot be read are skipped. When several
    artifacts share a package name the newest file wins, then the higher
    version.
    """
    root = Path(directory)
    if not root.is_dir():
        logger.warning("archive directory %s does not exist; index is empty", root)
        return ArchiveIndex()
    best: Dict[str, Tuple[Tuple[float, Tuple[int, ...]], PackageDescriptor]] = {}
    skipped = 0
    for path in sorted(root.iterdir()):
        if not path.is_file() or classify(path.name) is None:
            continue
        descriptor = extract(path)
        if descriptor is None:
            skipped += 1
            continue
        rank = (path.stat().st_mtime, descriptor.version)
        current = best.get(descriptor.name)
        if current is None or rank >= current[0]:
            best[descriptor.name] = (rank, descriptor)
    if skipped:
        logger.warning("skipped %d unreadable artifact(s) in %s", skipped, root)
    return ArchiveIndex({name: ArchiveEntry.from_descriptor(d) for name, (_, d) in best.items()})


def serialize_index(index: ArchiveIndex) -> str:
    lines = [f"({index.format_version}"]
    for name in sorted(index.entries):
        lines.append(" " + sexp.dumps(index.entries[name].to_sexp()))
    return "\n".join(lines) + ")\n"


def parse_index(text: str) -> ArchiveIndex:
    try:
        form = sexp.read(text)
    except sexp.SexpError as e:
        raise ArchiveFormatError(f"cannot read archive index: {e}") from e
    if not isinstance(form, list) or not form or form[0] != ARCHIVE_FORMAT_VERSION or isinstance(form[0], bool):
        raise ArchiveFormatError(f"unsupported archive index format (expected version {ARCHIVE_FORMAT_VERSION})")
    entries: Dict[str, ArchiveEntry] = {}
    for item in form[1:]:
        entry = ArchiveEntry.from_sexp(item)
        entries[entry.name] = entry
    return ArchiveIndex(entries)


def read_index(path: Union[str, os.PathLike]) -> ArchiveIndex:
    return parse_index(Path(path).read_text(encoding="utf-8"))


def write_index(directory: Union[str, os.PathLike]) -> Path:
    """Rescan `directory` and atomically replace its archive-contents."""
    root = Path(directory)
    text = serialize_index(build_index(root))
    target = root / ARCHIVE_CONTENTS
    fd, tmp = tempfile.mkstemp(prefix=f".{ARCHIVE_CONTENTS}.", dir=str(root))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, target)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise
    logger.info("wrote archive index %s", target)
    return target
