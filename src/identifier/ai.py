"""AI generated descriptive metadata for indexed folders.

Folder contents are summarized as CSV (a sample of files per folder) and sent
together with an empty JSON skeleton to a language model, which fills in title,
description, place, date, tags, persons and institutions for every folder.
"""

import csv
import io
import json
import logging
import os
import re
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any

import httpx

from identifier.errors import AIServiceError, ConfigError
from identifier.indexer.models import AIDescriptor, IndexRecord
from identifier.indexer.store import IndexRecordStore

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 300.0  # seconds, generation of large batches is slow

ENV_PATTERN = re.compile(r"%%([A-Z0-9_]+)%%")
JSON_PATTERN = re.compile(r"^[^{\[]*([{\[].*[}\]])[^}\]]*$", re.DOTALL)

DEFAULT_QUERY = """Based on the "CSV file", create metadata for every folder and fill in the empty
fields of the "JSON file" for all folders listed there. Make sure that every folder appears exactly once.
If folder or file names carry meaning, use it for title and description. If folder or file names allow
conclusions about place or date, fill in these fields accordingly. Use the format YYYY-MM-DD or YYYY for dates.
The fields "place" and "date" are optional but should be filled in when the information is available.
List keywords in "tags" and any persons (with their role, if known) and institutions that can be identified.
The metadata must be written in English in a scholarly style. Make sure the JSON format is strictly followed."""

CSV_HEADER = ["folder", "filename", "mimetype", "pronom", "type", "subtype", "size (bytes)"]

DESCRIPTOR_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "folders": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "folder": {"type": "string"},
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "place": {"type": "string"},
                    "date": {"type": "string"},
                    "tags": {"type": "array", "items": {"type": "string"}},
                    "persons": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string"},
                                "role": {"type": "string"},
                            },
                            "required": ["name"],
                        },
                    },
                    "institutions": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["folder", "title", "description"],
            },
        }
    },
    "required": ["folders"],
}


def resolve_apikey(apikey: str, env: Mapping[str, str] | None = None) -> str:
    """Replace a %%NAME%% placeholder by the value of environment variable NAME."""
    env = os.environ if env is None else env
    match = ENV_PATTERN.search(apikey)
    if match:
        return env.get(match.group(1), "")
    return apikey


def _text_or_file(value: str) -> str:
    path = Path(value)
    try:
        if path.is_file():
            return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot read query from file '{value}': {e}") from e
    return value


def load_query(query: str = "", additional_query: str = "") -> str:
    """
    Build the prompt.

    Both arguments may be literal text or the name of a file holding the text.
    The additional query is prepended to the query (or the default query).
    """
    prompt = _text_or_file(query) if query else DEFAULT_QUERY
    if additional_query:
        prompt = _text_or_file(additional_query) + "\n\n" + prompt
    return prompt


def split_model(model: str) -> tuple[str, str]:
    """Split "<driver>-<model>" into driver and model name ("google" means gemini)."""
    driver, sep, name = model.lower().partition("-")
    if not sep or not driver or not name:
        raise ConfigError(f"model '{model}' must consist of driver- and modelname")
    if driver == "google":
        driver = "gemini"
    return driver, name


class AIDriver:
    """Base class for language model drivers returning structured JSON text."""

    name = ""

    def __init__(self, model: str, apikey: str, key: str = "", client: httpx.Client | None = None):
        self.model = model
        self.apikey = apikey
        self.key = key or f"{self.name}-{model}"  # store key for the descriptors
        self._client = client

    def query(self, prompt: str, contexts: list[str]) -> str:
        raise NotImplementedError

    def _post(self, url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
        try:
            if self._client is not None:
                response = self._client.post(url, json=payload, headers=headers)
            else:
                with httpx.Client(timeout=REQUEST_TIMEOUT) as client:
                    response = client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise AIServiceError(f"{self.name} request timed out: {e}") from e
        except httpx.RequestError as e:
            raise AIServiceError(f"{self.name} request failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise AIServiceError(f"{self.name} returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise AIServiceError(f"{self.name} returned invalid JSON: {e}") from e


def _gemini_schema(schema: Any) -> Any:
    """Gemini expects upper case OpenAPI type names."""
    if isinstance(schema, dict):
        return {
            k: (v.upper() if k == "type" and isinstance(v, str) else _gemini_schema(v))
            for k, v in schema.items()
        }
    if isinstance(schema, list):
        return [_gemini_schema(v) for v in schema]
    return schema


class GeminiDriver(AIDriver):
    """Google Gemini generateContent API."""

    name = "gemini"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    def query(self, prompt: str, contexts: list[str]) -> str:
        payload = {
            "contents": [
                {
                    "role": "user",
                    "parts": [{"text": prompt}] + [{"text": context} for context in contexts],
                }
            ],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": _gemini_schema(DESCRIPTOR_SCHEMA),
            },
        }
        data = self._post(
            f"{self.BASE_URL}/models/{self.model}:generateContent",
            payload,
            {"x-goog-api-key": self.apikey},
        )
        try:
            parts = data["candidates"][0]["content"]["parts"]
            return "\n".join(part.get("text", "") for part in parts)
        except (KeyError, IndexError, TypeError) as e:
            raise AIServiceError(f"unexpected gemini response: {str(data)[:200]}") from e


class OpenAIDriver(AIDriver):
    """OpenAI chat completions API with JSON schema output."""

    name = "openai"
    BASE_URL = "https://api.openai.com/v1"

    def query(self, prompt: str, contexts: list[str]) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": prompt},
                {"role": "user", "content": "\n\n".join(contexts)},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "folders", "schema": DESCRIPTOR_SCHEMA},
            },
        }
        data = self._post(
            f"{self.BASE_URL}/chat/completions",
            payload,
            {"Authorization": f"Bearer {self.apikey}"},
        )
        try:
            return data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise AIServiceError(f"unexpected openai response: {str(data)[:200]}") from e


DRIVERS: dict[str, type[AIDriver]] = {
    GeminiDriver.name: GeminiDriver,
    OpenAIDriver.name: OpenAIDriver,
}


def create_driver(model: str, apikey: str, client: httpx.Client | None = None) -> AIDriver:
    """Create the driver for a "<driver>-<model>" name such as "google-gemini-2.0-pro-exp-02-05"."""
    driver_name, model_name = split_model(model)
    try:
        driver_class = DRIVERS[driver_name]
    except KeyError:
        raise ConfigError(f"unknown driver '{driver_name}'") from None
    return driver_class(model_name, resolve_apikey(apikey), key=model.lower(), client=client)


def collect_folders(store: IndexRecordStore, prefix: str = "", sample: int = 10) -> dict[str, list[IndexRecord]]:
    """Group stored records by folder, keeping at most sample records per folder."""
    folders: dict[str, list[IndexRecord]] = {}

    def visit(record: IndexRecord) -> bool:
        files = folders.setdefault(record.folder, [])
        if len(files) < sample:
            files.append(record)
        return False

    store.scan(prefix, visit)
    return folders


def build_contexts(folders: Mapping[str, list[IndexRecord]]) -> list[str]:
    """The CSV file summary and the JSON skeleton sent along with the prompt."""
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(CSV_HEADER)
    for folder, records in folders.items():
        for record in records:
            ident = record.indexer
            writer.writerow(
                [folder, record.basename, ident.mimetype, ident.pronom, ident.type, ident.subtype, record.size]
            )
    skeleton = [{"folder": folder, "title": "", "description": "", "place": "", "date": ""} for folder in folders]
    return [
        "CSV file (first line contains the column headers):\n" + buf.getvalue(),
        "JSON file:\n" + json.dumps({"folders": skeleton}, ensure_ascii=False),
    ]


def parse_response(text: str, folders: Mapping[str, Any]) -> list[AIDescriptor]:
    """
    Extract the descriptors from a model response.

    Only descriptors for requested folders are returned, the first one wins
    if a folder is described twice.

    Raises:
        AIServiceError: If the response holds no valid JSON.
    """
    match = JSON_PATTERN.search(text.strip())
    if match is None:
        raise AIServiceError(f"no JSON found in response: {text[:200]}")
    try:
        data = json.loads(match.group(1))
    except json.JSONDecodeError as e:
        raise AIServiceError(f"cannot decode response: {e}") from e
    if isinstance(data, dict):
        data = data.get("folders", [])
    if not isinstance(data, list):
        raise AIServiceError("response is not a list of folders")

    descriptors: dict[str, AIDescriptor] = {}
    for item in data:
        if not isinstance(item, dict):
            logger.warning("ignoring invalid folder entry %r", item)
            continue
        item = {str(k).lower(): v for k, v in item.items()}
        folder = item.get("folder")
        if folder not in folders:
            logger.warning("ignoring description of unknown folder %r", folder)
            continue
        if folder in descriptors:
            continue
        descriptors[folder] = AIDescriptor.from_dict(item)

    for folder in folders:
        if folder not in descriptors:
            logger.warning("no description returned for folder '%s'", folder)
    return list(descriptors.values())


def _batches(folders: dict[str, list[IndexRecord]], size: int) -> Iterator[dict[str, list[IndexRecord]]]:
    names = list(folders)
    for start in range(0, len(names), size):
        yield {name: folders[name] for name in names[start : start + size]}


def describe_folders(
    driver: AIDriver,
    store: IndexRecordStore,
    prompt: str,
    prefix: str = "",
    sample: int = 10,
    batch: int = 25,
    on_descriptor: Callable[[str, AIDescriptor], None] | None = None,
) -> list[AIDescriptor]:
    """
    Describe every folder holding indexed files below prefix and store the results.

    Raises:
        AIServiceError: On the first failing request; descriptors of earlier
            batches are already stored.
    """
    folders = collect_folders(store, prefix, sample)
    logger.info("describing %d folders with %s", len(folders), driver.key)

    results = []
    for number, chunk in enumerate(_batches(folders, batch), start=1):
        logger.info("querying %s for batch %d (%d folders)", driver.key, number, len(chunk))
        text = driver.query(prompt, build_contexts(chunk))
        for descriptor in parse_response(text, chunk):
            store.put_ai(driver.key, descriptor)
            if on_descriptor is not None:
                on_descriptor(f"ai:{driver.key}:{descriptor.folder}", descriptor)
            results.append(descriptor)
    return results
