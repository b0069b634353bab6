"""Tests for the identification engine."""

import hashlib
import json
import subprocess

import pytest
from PIL import Image

from identifier.errors import EngineError
from identifier.indexer import engine as engine_module
from identifier.indexer.engine import (
    IdentificationEngine,
    detect_mimetype,
    normalize_actions,
    parse_siegfried,
)

SIEGFRIED_OUTPUT = {
    "siegfried": "1.11.0",
    "files": [
        {
            "filename": "doc.pdf",
            "matches": [
                {"ns": "pronom", "id": "fmt/276", "format": "Acrobat PDF 1.7", "mime": "application/pdf"}
            ],
        }
    ],
}


@pytest.fixture
def engine():
    return IdentificationEngine(siegfried="identifier-test-missing-sf")


class TestIdentify:
    def test_text_file(self, tmp_path, engine):
        (tmp_path / "notes.txt").write_text("hello world")

        result = engine.identify(tmp_path, "notes.txt", actions=[], checksums=["sha512"])

        assert result.mimetype == "text/plain"
        assert result.type == "text"
        assert result.subtype == "plain"
        assert result.size == 11
        assert result.checksum == {"sha512": hashlib.sha512(b"hello world").hexdigest()}

    def test_several_checksums(self, tmp_path, engine):
        (tmp_path / "a").write_bytes(b"abc")

        result = engine.identify(tmp_path, "a", actions=[], checksums=["md5", "sha256"])

        assert result.checksum == {
            "md5": hashlib.md5(b"abc").hexdigest(),
            "sha256": hashlib.sha256(b"abc").hexdigest(),
        }

    def test_empty_file(self, tmp_path, engine):
        (tmp_path / "empty").write_bytes(b"")

        result = engine.identify(tmp_path, "empty", actions=[], checksums=["sha512"])

        assert result.size == 0
        assert result.mimetype == "application/x-empty"

    def test_xml_root_element(self, tmp_path, engine):
        (tmp_path / "mets.xml").write_text(
            '<?xml version="1.0"?>\n<mets:mets xmlns:mets="http://www.loc.gov/METS/"><mets:dmdSec/></mets:mets>'
        )

        result = engine.identify(tmp_path, "mets.xml", actions=["xml"], checksums=["sha512"])

        assert result.mimetype == "application/xml"
        assert result.subtype == "mets"

    def test_image_dimensions(self, tmp_path, engine):
        Image.new("RGB", (3, 2)).save(tmp_path / "pixel.png")

        result = engine.identify(tmp_path, "pixel.png", actions=["image"], checksums=["sha512"])

        assert result.mimetype == "image/png"
        assert (result.width, result.height) == (3, 2)

    def test_image_action_ignores_other_types(self, tmp_path, engine):
        (tmp_path / "a.txt").write_text("text")
        result = engine.identify(tmp_path, "a.txt", actions=["image", "audio"], checksums=["sha512"])
        assert (result.width, result.height, result.duration) == (0, 0, 0)

    def test_missing_file(self, tmp_path, engine):
        with pytest.raises(EngineError):
            engine.identify(tmp_path, "missing", actions=[], checksums=["sha512"])

    def test_unknown_checksum(self, tmp_path, engine):
        (tmp_path / "a").write_bytes(b"abc")
        with pytest.raises(EngineError):
            engine.identify(tmp_path, "a", actions=[], checksums=["no-such-hash"])


class TestSiegfried:
    def test_missing_binary_is_skipped(self, tmp_path, engine):
        (tmp_path / "a.txt").write_text("text")
        result = engine.identify(tmp_path, "a.txt", actions=["siegfried"], checksums=["sha512"])
        assert result.pronom == ""

    def test_pronom_from_binary(self, tmp_path, monkeypatch):
        (tmp_path / "doc.pdf").write_bytes(b"%PDF-1.7\n")
        calls = []

        def fake_run(args, **kwargs):
            calls.append(args)
            return subprocess.CompletedProcess(args, 0, stdout=json.dumps(SIEGFRIED_OUTPUT), stderr="")

        monkeypatch.setattr(engine_module.shutil, "which", lambda name: "/usr/local/bin/sf")
        monkeypatch.setattr(engine_module.subprocess, "run", fake_run)

        result = IdentificationEngine().identify(tmp_path, "doc.pdf", actions=["siegfried"], checksums=["sha512"])

        assert result.pronom == "fmt/276"
        assert calls == [["/usr/local/bin/sf", "-json", str(tmp_path / "doc.pdf")]]

    def test_failing_binary(self, tmp_path, monkeypatch):
        (tmp_path / "a").write_bytes(b"abc")
        monkeypatch.setattr(engine_module.shutil, "which", lambda name: "/usr/local/bin/sf")
        monkeypatch.setattr(
            engine_module.subprocess,
            "run",
            lambda args, **kwargs: subprocess.CompletedProcess(args, 1, stdout="", stderr="broken"),
        )

        with pytest.raises(EngineError):
            IdentificationEngine().identify(tmp_path, "a", actions=["siegfried"], checksums=["sha512"])


class TestParseSiegfried:
    def test_pronom_match(self):
        assert parse_siegfried(json.dumps(SIEGFRIED_OUTPUT)) == ("fmt/276", "application/pdf")

    def test_unknown_is_skipped(self):
        output = {"files": [{"matches": [{"ns": "pronom", "id": "UNKNOWN"}]}]}
        assert parse_siegfried(json.dumps(output)) == ("", "")

    def test_invalid_output(self):
        with pytest.raises(EngineError):
            parse_siegfried("not json")


class TestDetectMimetype:
    @pytest.mark.parametrize(
        "name, head, expected",
        [
            ("empty", b"", "application/x-empty"),
            ("pixel", b"\x89PNG\r\n\x1a\n" + b"\x00" * 16, "image/png"),
            ("data", b'<?xml version="1.0"?><a/>', "application/xml"),
            ("table.csv", b"a,b\n1,2\n", "text/csv"),
            ("readme", b"just text", "text/plain"),
            ("cut", "abcé".encode()[:-1], "text/plain"),
            ("blob", b"\x00\x01\x02\x03", "application/octet-stream"),
        ],
    )
    def test_detection(self, name, head, expected):
        assert detect_mimetype(name, head) == expected


def test_normalize_actions():
    assert normalize_actions([" XML", "siegfried", "xml", ""]) == ["siegfried", "xml"]
