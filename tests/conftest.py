"""Shared fixtures for identifier tests."""

import json

import pytest

from identifier.ai import AIDriver
from identifier.indexer import Identification, IndexRecord, IndexRecordStore


class FakeDriver(AIDriver):
    """Answers every query by filling in the JSON skeleton it was sent."""

    name = "fake"

    def __init__(self, model: str = "model", apikey: str = "secret", **kwargs):
        super().__init__(model, apikey, **kwargs)
        self.calls = []

    def query(self, prompt: str, contexts: list[str]) -> str:
        self.calls.append((prompt, contexts))
        skeleton = json.loads(contexts[1].split("\n", 1)[1])
        for folder in skeleton["folders"]:
            folder["title"] = f"Title of {folder['folder']}"
            folder["description"] = "A folder"
            folder["tags"] = ["test"]
            folder["persons"] = [{"name": "Ada Lovelace", "role": "author"}]
        return "Here is the result:\n```json\n" + json.dumps(skeleton) + "\n```"


@pytest.fixture
def fake_driver():
    return FakeDriver()


@pytest.fixture
def make_record():
    """Factory for index records with a text/plain identification."""

    def _make(path, size=1, checksum="", duplicate=False, mimetype="text/plain", pronom=""):
        identification = Identification(
            mimetype=mimetype,
            pronom=pronom,
            type=mimetype.partition("/")[0],
            subtype=mimetype.partition("/")[2],
            size=size,
            checksum={"sha512": checksum} if checksum else {},
        )
        return IndexRecord.create(path, size, 1700000000, identification, 1700000100, duplicate)

    return _make


@pytest.fixture
def store(tmp_path):
    """A fresh writable index store."""
    s = IndexRecordStore(tmp_path / "db")
    s.initialize()
    yield s
    s.close()
