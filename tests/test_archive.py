import os

import pytest

from conftest import write_single, write_tar
from elquest import sexp
from elquest.archive import (
    ARCHIVE_CONTENTS,
    ArchiveIndex,
    build_index,
    parse_index,
    read_index,
    serialize_index,
    write_index,
)
from elquest.descriptor import ArtifactKind
from elquest.errors import ArchiveFormatError


def _populate(directory):
    write_single(directory, "a", "1.0", requires=[("b", "1.0"), ("emacs", "25.1")], summary="Package A")
    write_tar(directory, "b", "2.0", requires=[("c", "0.1")], summary="Package B")
    write_single(directory, "c", "0.1", summary="Package C")


def test_index_round_trip(tmp_path):
    _populate(tmp_path)
    index = build_index(tmp_path)
    assert sorted(index.entries) == ["a", "b", "c"]

    text = serialize_index(index)
    assert text.startswith("(1\n")
    reparsed = parse_index(text)
    assert set(reparsed.descriptors()) == set(index.descriptors())
    b = reparsed.get("b")
    assert b.kind is ArtifactKind.MULTI
    assert b.dependencies == (("c", (0, 1)),)
    assert reparsed.get("a").extras[":authors"] == index.get("a").extras[":authors"]


def test_serialized_entry_shape(tmp_path):
    write_single(tmp_path, "c", "0.1", summary="Package C")
    form = sexp.read(serialize_index(build_index(tmp_path)))
    assert form[0] == 1
    entry = form[1]
    assert entry.car == "c"
    version, requires, summary, kind, extras = entry.cdr
    assert version == [0, 1]
    assert requires == []
    assert summary == "Package C"
    assert kind == "single"
    assert isinstance(extras, list)


def test_empty_index(tmp_path):
    assert serialize_index(ArchiveIndex()) == "(1)\n"
    assert len(build_index(tmp_path)) == 0
    assert len(build_index(tmp_path / "missing")) == 0
    assert len(parse_index("(1)")) == 0


def test_corrupt_artifact_is_skipped(tmp_path):
    _populate(tmp_path)
    (tmp_path / "broken-1.0.tar").write_bytes(b"garbage")
    (tmp_path / "notes.txt").write_text("not an artifact")
    (tmp_path / "subdir.el").mkdir()
    index = build_index(tmp_path)
    assert sorted(index.entries) == ["a", "b", "c"]


def test_newest_artifact_wins(tmp_path):
    old = write_single(tmp_path, "a", "2.0")
    new = write_single(tmp_path, "a", "1.5")
    os.utime(old, (1_000_000, 1_000_000))
    os.utime(new, (2_000_000, 2_000_000))
    assert build_index(tmp_path).get("a").version == (1, 5)

    os.utime(old, (3_000_000, 3_000_000))
    assert build_index(tmp_path).get("a").version == (2, 0)


@pytest.mark.parametrize("text", ["", "(2 (a . [(1) nil \"\" single nil]))", "(1 (a 1 2))", "(1", "foo"])
def test_parse_index_rejects_malformed(text):
    with pytest.raises(ArchiveFormatError):
        parse_index(text)


def test_write_index_is_atomic_and_complete(tmp_path):
    _populate(tmp_path)
    target = write_index(tmp_path)
    assert target == tmp_path / ARCHIVE_CONTENTS
    assert sorted(read_index(target).entries) == ["a", "b", "c"]
    assert [p.name for p in tmp_path.iterdir() if p.name.startswith(".")] == []

    # the index file itself is never listed
    write_single(tmp_path, "d", "1.0")
    write_index(tmp_path)
    assert sorted(read_index(target).entries) == ["a", "b", "c", "d"]
