"""Tests for the command line interface."""

import csv
import json
import logging

import pytest

from identifier import commands
from identifier.indexer import IndexRecordStore
from identifier.indexer.models import AIDescriptor
from identifier.main import build_parser, create_server, main, merge_commands
from identifier.rocrate import METADATA_FILE


@pytest.fixture
def data_root(tmp_path):
    root = tmp_path / "data"
    (root / "letters").mkdir(parents=True)
    (root / "letters" / "one.txt").write_text("dear ada")
    (root / "letters" / "copy.txt").write_text("dear ada")
    (root / "letters" / "empty.txt").write_bytes(b"")
    (root / "notes.txt").write_text("notes")
    return root


@pytest.fixture
def database(tmp_path):
    return tmp_path / "db"


def read_csv(path):
    with open(path, newline="", encoding="utf-8") as f:
        return list(csv.DictReader(f))


def index(data_root, database, *extra):
    return main(["index", str(data_root), "--database", str(database), "--actions", "xml", *extra])


class TestParser:
    def test_merge_commands(self):
        assert merge_commands(["index", "list", "--database", "db"]) == ["index list", "--database", "db"]
        assert merge_commands(["--log-level", "INFO", "ai", "ro-crate", "p"]) == [
            "--log-level",
            "INFO",
            "ai ro-crate",
            "p",
        ]
        assert merge_commands(["index", "data"]) == ["index", "data"]
        assert merge_commands(["files", "list"]) == ["files", "list"]

    def test_nested_command(self):
        args = build_parser().parse_args(merge_commands(["index", "mime", "--database", "db", "--empty"]))
        assert args.command == "index mime"
        assert args.handler is commands.cmd_index_mime
        assert args.empty

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "COMMAND" in capsys.readouterr().out

    def test_show_config(self, capsys):
        assert main(["--show-config"]) == 0
        out = capsys.readouterr().out
        assert out.startswith("# source: embedded")
        assert "[indexer]" in out

    def test_invalid_config(self, tmp_path):
        path = tmp_path / "bad.toml"
        path.write_text("[indexer]\nconcurrent = 0\n")
        assert main(["--config", str(path), "--show-config"]) == 1

    def test_invalid_log_level(self):
        assert main(["--log-level", "LOUD", "--show-config"]) == 1


class TestIndexCommand:
    def test_index_to_csv(self, data_root, database, tmp_path):
        out = tmp_path / "index.csv"
        assert index(data_root, database, "--csv", str(out)) == 0

        rows = read_csv(out)
        assert sorted(r["path"] for r in rows) == [
            "letters/copy.txt",
            "letters/empty.txt",
            "letters/one.txt",
            "notes.txt",
        ]
        duplicates = [r["path"] for r in rows if r["duplicate"] == "yes"]
        assert len(duplicates) == 1
        assert duplicates[0] in ("letters/copy.txt", "letters/one.txt")

        with IndexRecordStore(database, read_only=True) as store:
            assert store.count() == 4

    def test_index_without_database(self, data_root, tmp_path):
        out = tmp_path / "index.jsonl"
        assert main(["index", str(data_root), "--actions", "xml", "--jsonl", str(out)]) == 0
        records = [json.loads(line) for line in out.read_text().splitlines()]
        assert sorted(r["path"] for r in records) == [
            "letters/copy.txt",
            "letters/empty.txt",
            "letters/one.txt",
            "notes.txt",
        ]

    def test_index_filters(self, data_root, database, tmp_path):
        out = tmp_path / "empty.csv"
        assert index(data_root, database, "--empty", "--csv", str(out)) == 0
        assert [r["path"] for r in read_csv(out)] == ["letters/empty.txt"]

    def test_index_missing_directory(self, tmp_path, database):
        assert index(tmp_path / "missing", database) == 1

    def test_index_unknown_action(self, data_root, database):
        assert main(["index", str(data_root), "--actions", "ocr"]) == 1

    def test_remove_needs_filter(self, data_root, database):
        assert index(data_root, database, "--remove") == 1
        assert (data_root / "notes.txt").exists()

    def test_index_remove_empty(self, data_root, database, tmp_path):
        assert index(data_root, database, "--empty", "--remove", "--csv", str(tmp_path / "out.csv")) == 0
        assert not (data_root / "letters" / "empty.txt").exists()
        with IndexRecordStore(database, read_only=True) as store:
            assert store.get("letters/empty.txt") is None
            assert store.count() == 3


class TestIndexReports:
    @pytest.fixture
    def indexed(self, data_root, database, tmp_path):
        assert index(data_root, database, "--csv", str(tmp_path / "index.csv")) == 0
        return database

    def test_list(self, indexed, tmp_path):
        out = tmp_path / "list.csv"
        assert main(["index", "list", "--database", str(indexed), "--prefix", "letters/", "--csv", str(out)]) == 0
        assert len(read_csv(out)) == 3

    def test_list_console(self, indexed, capsys):
        assert main(["index", "list", "--database", str(indexed), "--regexp", "^notes"]) == 0
        out = capsys.readouterr().out
        assert '#including regexp "^notes"' in out
        assert "path: notes.txt" in out

    def test_list_remove_needs_path(self, indexed):
        assert main(["index", "list", "--database", str(indexed), "--empty", "--remove"]) == 1

    def test_list_remove(self, indexed, data_root, tmp_path):
        out = tmp_path / "removed.csv"
        args = ["index", "list", str(data_root), "--database", str(indexed), "--duplicates", "--remove"]
        assert main([*args, "--csv", str(out)]) == 0

        removed = [r["path"] for r in read_csv(out)]
        assert len(removed) == 1
        assert not (data_root / removed[0]).exists()
        with IndexRecordStore(indexed, read_only=True) as store:
            assert store.get(removed[0]) is None
            assert store.count() == 3

    def test_list_missing_database(self, tmp_path):
        assert main(["index", "list", "--database", str(tmp_path / "none")]) == 1

    def test_folders(self, indexed, tmp_path):
        out = tmp_path / "folders.csv"
        assert main(["index", "folders", "--database", str(indexed), "--csv", str(out)]) == 0
        rows = read_csv(out)
        assert [r["Path"] for r in rows] == ["/letters", "/"]
        assert rows[1]["Files"] == "4"
        assert rows[1]["Bytes"] == str(2 * len("dear ada") + len("notes"))

    def test_folders_table(self, indexed, capsys):
        assert main(["index", "folders", "--database", str(indexed)]) == 0
        assert "Folder statistics" in capsys.readouterr().out

    def test_mime(self, indexed, tmp_path):
        out = tmp_path / "mime.csv"
        assert main(["index", "mime", "--database", str(indexed), "--csv", str(out)]) == 0
        rows = read_csv(out)
        assert {r["mimetype"]: r["count"] for r in rows} == {"application/x-empty": "1", "text/plain": "3"}

    def test_pronom(self, indexed, tmp_path):
        out = tmp_path / "pronom.jsonl"
        assert main(["index", "pronom", "--database", str(indexed), "--jsonl", str(out)]) == 0
        rows = [json.loads(line) for line in out.read_text().splitlines()]
        assert rows == [{"pronom": "", "count": 4, "size": 21}]


class TestClearpath:
    @pytest.fixture
    def messy(self, tmp_path):
        root = tmp_path / "messy"
        (root / " bad dir").mkdir(parents=True)
        (root / " bad dir" / ".hidden{1}.txt").write_text("x")
        (root / "fine.txt").write_text("x")
        return root

    def test_dry_run(self, messy, capsys):
        assert main(["clearpath", str(messy), "--auto"]) == 0
        out = capsys.readouterr().out
        assert "    " + " bad dir/.hidden{1}.txt\n--> " + " bad dir/_hidden_1_.txt\n" in out
        assert "     bad dir\n--> bad dir\n" in out
        assert (messy / " bad dir" / ".hidden{1}.txt").exists()

    def test_rename(self, messy):
        assert main(["clearpath", str(messy), "--auto", "--rename"]) == 0
        assert (messy / "bad dir" / "_hidden_1_.txt").exists()
        assert not (messy / " bad dir").exists()
        assert (messy / "fine.txt").exists()

    def test_rename_with_regexp(self, messy):
        assert main(["clearpath", str(messy), "--regexp", r"\.txt$", "--replace", ".text", "--rename"]) == 0
        assert (messy / "fine.text").exists()

    def test_existing_target_is_not_overwritten(self, messy):
        (messy / "fine.text").write_text("keep")
        args = ["clearpath", str(messy), "--regexp", r"\.txt$", "--replace", ".text", "--rename"]
        assert main(args) == 1
        assert (messy / "fine.text").read_text() == "keep"
        assert (messy / "fine.txt").exists()

    def test_needs_auto_or_regexp(self, messy):
        assert main(["clearpath", str(messy)]) == 1

    def test_regexp_needs_replace(self, messy):
        assert main(["clearpath", str(messy), "--regexp", "x"]) == 1


class TestFilesAndFolders:
    @pytest.fixture
    def tree(self, tmp_path):
        root = tmp_path / "tree"
        (root / "keep" / "__MACOSX").mkdir(parents=True)
        (root / "__MACOSX" / "inner").mkdir(parents=True)
        (root / "keep" / "a.txt").write_text("a")
        (root / "keep" / ".DS_Store").write_text("x")
        (root / "__MACOSX" / "inner" / ".DS_Store").write_text("x")
        return root

    def test_files_dry_run(self, tree, capsys):
        assert main(["files", str(tree), "--regexp", r"^\.DS_Store$"]) == 0
        out = capsys.readouterr().out.splitlines()
        assert out == ["__MACOSX/inner/.DS_Store", "keep/.DS_Store"]
        assert (tree / "keep" / ".DS_Store").exists()

    def test_files_remove(self, tree):
        assert main(["files", str(tree), "--regexp", r"^\.DS_Store$", "--remove"]) == 0
        assert not (tree / "keep" / ".DS_Store").exists()
        assert (tree / "keep" / "a.txt").exists()

    def test_folders_remove(self, tree, capsys):
        assert main(["folders", str(tree), "--regexp", "^__MACOSX$", "--remove"]) == 0
        assert capsys.readouterr().out.splitlines() == ["__MACOSX", "keep/__MACOSX"]
        assert not (tree / "__MACOSX").exists()
        assert not (tree / "keep" / "__MACOSX").exists()
        assert (tree / "keep" / "a.txt").exists()

    def test_invalid_regexp(self, tree):
        assert main(["files", str(tree), "--regexp", "("]) == 1

    def test_empty_regexp_matches_everything(self, tree, capsys):
        assert main(["files", str(tree), "--regexp", ""]) == 0
        assert set(capsys.readouterr().out.splitlines()) == {
            "__MACOSX/inner/.DS_Store",
            "keep/.DS_Store",
            "keep/a.txt",
        }

        assert main(["folders", str(tree), "--regexp", ""]) == 0
        assert set(capsys.readouterr().out.splitlines()) == {"__MACOSX", "keep"}
        assert (tree / "keep" / "a.txt").exists()


class TestAICommands:
    @pytest.fixture
    def indexed(self, data_root, database, tmp_path):
        assert index(data_root, database, "--csv", str(tmp_path / "index.csv")) == 0
        return database

    def test_ai(self, indexed, tmp_path, fake_driver, monkeypatch):
        monkeypatch.setattr(commands, "create_driver", lambda model, apikey: fake_driver)
        out = tmp_path / "ai.csv"

        assert main(["ai", "--database", str(indexed), "--csv", str(out)]) == 0

        rows = read_csv(out)
        assert [r["folder"] for r in rows] == ["letters", "."]
        assert rows[0]["title"] == "Title of letters"
        with IndexRecordStore(indexed, read_only=True) as store:
            assert store.get_ai("fake-model", "letters").tags == ["test"]

    def test_ai_without_apikey(self, indexed, monkeypatch):
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.delenv("IDENTIFIER_AI_APIKEY", raising=False)
        assert main(["ai", "--database", str(indexed)]) == 1

    def test_ai_list(self, database, tmp_path):
        with IndexRecordStore(database) as store:
            store.put_ai("google-gemini-x", AIDescriptor(folder="a", title="A"))
            store.put_ai("openai-gpt-4o", AIDescriptor(folder="b", title="B"))
        out = tmp_path / "ai.jsonl"

        assert main(["ai", "list", "--database", str(database), "--model", "openai-gpt-4o", "--jsonl", str(out)]) == 0

        rows = [json.loads(line) for line in out.read_text().splitlines()]
        assert [r["title"] for r in rows] == ["B"]

    def test_ro_crate(self, data_root, database):
        with IndexRecordStore(database) as store:
            store.put_ai("google-gemini-x", AIDescriptor(folder="letters", title="Letters"))
            store.put_ai("google-gemini-x", AIDescriptor(folder=".", title="Archive"))

        args = ["ai", "ro-crate", str(data_root), "--database", str(database), "--model", "google-gemini-x"]
        assert main(args) == 0

        data = json.loads((data_root / METADATA_FILE).read_text(encoding="utf-8"))
        elements = {e["@id"]: e for e in data["@graph"]}
        assert elements["letters/"]["name"] == "Letters"
        assert elements["./"]["name"] == "Archive"
        assert {"@id": "letters/"} in elements["./"]["hasPart"]


def test_create_server(store, caplog):
    with caplog.at_level(logging.INFO):
        mcp = create_server(store)

    assert mcp.name == "identifier"
    messages = [record.message for record in caplog.records]
    assert any("Registering read tools" in msg for msg in messages)
    assert any("Server configured successfully" in msg for msg in messages)
