import io
import tarfile

import pytest

from conftest import el_source, write_single, write_tar
from elquest.archive import artifact_file_name
from elquest.descriptor import (
    ArtifactKind,
    PackageDescriptor,
    SingleFileParser,
    TarParser,
    classify,
    extract,
    parser_for,
    read_headers,
    version_to_list,
)
from elquest.errors import DescriptorParseError
from elquest.sexp import Cons, Symbol


@pytest.mark.parametrize(
    "file_name,expected",
    [
        ("foo-1.0.el", ArtifactKind.SINGLE),
        ("foo-1.0.tar", ArtifactKind.MULTI),
        ("/some/dir/bar.el", ArtifactKind.SINGLE),
        ("archive-contents", None),
        ("foo-1.0.tar.gz", None),
        ("foo.elc", None),
        ("README", None),
        (".el", None),
    ],
)
def test_classify(file_name, expected):
    assert classify(file_name) is expected


def test_artifact_name_matches_classifier(tmp_path):
    for kind in ArtifactKind:
        d = PackageDescriptor("foo", (1, 0), kind=kind)
        path = artifact_file_name(tmp_path, d)
        assert classify(path.name) is kind
        assert path == artifact_file_name(tmp_path, d)


def test_artifact_name_examples(tmp_path):
    single = PackageDescriptor("foo", (1, 0, 0), summary="desc")
    assert artifact_file_name(tmp_path, single) == tmp_path / "foo-1.0.0.el"
    multi = PackageDescriptor("bar", (20240101, 1200), kind=ArtifactKind.MULTI)
    assert artifact_file_name(tmp_path, multi).name == "bar-20240101.1200.tar"


def test_version_to_list():
    assert version_to_list("1.2.3") == (1, 2, 3)
    assert version_to_list("20240115.930") == (20240115, 930)
    with pytest.raises(DescriptorParseError):
        version_to_list("1.2-beta")
    with pytest.raises(DescriptorParseError):
        version_to_list("")


def test_descriptor_invariants():
    with pytest.raises(DescriptorParseError):
        PackageDescriptor("", (1,))
    with pytest.raises(DescriptorParseError):
        PackageDescriptor("foo", ())
    with pytest.raises(DescriptorParseError):
        PackageDescriptor("foo", (1,), requires=(("dash", (1,)), ("dash", (2,))))


def test_single_file_parser():
    text = el_source("foo", "1.2", requires=[("emacs", "25.1"), ("dash", "2.0")], summary="Frobnicate things",
                     extra_headers=";; URL: https://example.com/foo\n;; Keywords: tools, convenience\n")
    d = SingleFileParser().parse(text.encode("utf-8"))
    assert d.name == "foo"
    assert d.version == (1, 2)
    assert d.summary == "Frobnicate things"
    assert d.kind is ArtifactKind.SINGLE
    assert d.dependencies == (("emacs", (25, 1)), ("dash", (2, 0)))
    assert d.extras[":url"] == "https://example.com/foo"
    assert d.extras[":keywords"] == ["tools", "convenience"]
    assert d.extras[":authors"] == [Cons("Jane Doe", "jane@example.com")]


def test_single_file_multiline_requires():
    text = (
        ";;; foo.el --- Summary\n"
        ";; Package-Version: 3.0\n"
        ";; Version: 1.0\n"
        ";; Package-Requires: ((emacs \"26.1\")\n"
        ";;                    (s \"1.12\"))\n"
        ";;; Code:\n"
    )
    headers = read_headers(text)
    assert headers["package-requires"].count("(") == 3
    d = SingleFileParser().parse(text.encode())
    assert d.version == (3, 0)
    assert d.dependencies == (("emacs", (26, 1)), ("s", (1, 12)))


def test_single_file_parser_rejects_missing_version():
    with pytest.raises(DescriptorParseError):
        SingleFileParser().parse(b";;; foo.el --- Summary\n;;; Code:\n")
    with pytest.raises(DescriptorParseError):
        SingleFileParser().parse(b"(defun foo ())\n")


def test_tar_parser(tmp_path):
    path = write_tar(tmp_path, "bar", "2.1", requires=[("foo", "1.0")], summary="Bar things")
    d = TarParser().parse(path.read_bytes())
    assert d.name == "bar"
    assert d.version == (2, 1)
    assert d.kind is ArtifactKind.MULTI
    assert d.summary == "Bar things"
    assert d.dependencies == (("foo", (1, 0)),)


def test_tar_without_pkg_file(tmp_path):
    path = tmp_path / "baz-1.0.tar"
    with tarfile.open(path, "w") as tar:
        data = b"(provide 'baz)\n"
        info = tarfile.TarInfo("baz-1.0/baz.el")
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    with pytest.raises(DescriptorParseError):
        TarParser().parse(path.read_bytes())
    assert extract(path) is None


def test_parser_dispatch():
    assert isinstance(parser_for(ArtifactKind.SINGLE), SingleFileParser)
    assert isinstance(parser_for(ArtifactKind.MULTI), TarParser)


def test_extract(tmp_path):
    single = write_single(tmp_path, "foo", "1.0")
    assert extract(single).full_name == "foo-1.0"
    corrupt = tmp_path / "broken-1.0.tar"
    corrupt.write_bytes(b"this is not a tar archive")
    assert extract(corrupt) is None
    garbage = tmp_path / "junk-1.0.el"
    garbage.write_bytes(b"\xff\xfe not utf-8")
    assert extract(garbage) is None
    other = tmp_path / "notes.txt"
    other.write_text("hi")
    assert extract(other) is None
    assert extract(tmp_path / "missing-1.0.el") is None
    assert Symbol(":url") == ":url"
