"""
Technical metadata extraction for single files.

Format signatures are delegated to the filetype library and, when installed,
the siegfried ``sf`` binary for PRONOM identification. Media properties come
from Pillow (images) and mutagen (audio/video).
"""

import hashlib
import json
import logging
import mimetypes
import shutil
import subprocess
import threading
import xml.etree.ElementTree as ET
from collections.abc import Iterable
from pathlib import Path

import filetype
import mutagen
from PIL import Image

from identifier.errors import EngineError
from identifier.indexer.models import Identification

logger = logging.getLogger(__name__)

ACTIONS = ("siegfried", "xml", "image", "audio")
DEFAULT_ACTIONS = ["siegfried", "xml"]
DEFAULT_CHECKSUMS = ["sha512"]

CHUNK_SIZE = 1024 * 1024
HEAD_SIZE = 8192

XML_MIMETYPES = {"application/xml", "text/xml"}


def normalize_actions(actions: Iterable[str]) -> list[str]:
    """Sorted, de-duplicated, lower-cased action names."""
    return sorted({action.strip().lower() for action in actions if action.strip()})


class IdentificationEngine:
    """Identifies files below a data root."""

    def __init__(self, siegfried: str = "sf"):
        self.siegfried = siegfried
        self._siegfried_path: str | None = None
        self._siegfried_checked = False
        self._lock = threading.Lock()

    def identify(
        self,
        root: Path,
        path: str,
        actions: Iterable[str] = DEFAULT_ACTIONS,
        checksums: Iterable[str] = DEFAULT_CHECKSUMS,
    ) -> Identification:
        """
        Identify one file.

        Args:
            root: Data root directory
            path: Slash separated path relative to root
            actions: Additional extraction steps to run
            checksums: hashlib algorithm names

        Raises:
            EngineError: If the file cannot be read or an action fails.
        """
        full = Path(root) / path
        result = Identification()

        head = self._hash_file(full, list(checksums), result)
        result.mimetype = detect_mimetype(full.name, head)
        result.type, _, result.subtype = result.mimetype.partition("/")

        for action in normalize_actions(actions):
            if action == "siegfried":
                self._siegfried(full, result)
            elif action == "xml":
                self._xml(full, head, result)
            elif action == "image":
                self._image(full, result)
            elif action == "audio":
                self._audio(full, result)
            else:
                logger.warning("unknown action '%s' ignored", action)

        return result

    def _hash_file(self, full: Path, algorithms: list[str], result: Identification) -> bytes:
        """Compute all checksums in one pass; return the first bytes of the file."""
        try:
            hashers = {alg: hashlib.new(alg) for alg in algorithms}
        except ValueError as e:
            raise EngineError(f"unsupported checksum algorithm: {e}") from e

        head = b""
        size = 0
        try:
            with open(full, "rb") as f:
                while chunk := f.read(CHUNK_SIZE):
                    if not head:
                        head = chunk[:HEAD_SIZE]
                    size += len(chunk)
                    for hasher in hashers.values():
                        hasher.update(chunk)
        except OSError as e:
            raise EngineError(f"cannot read {full}: {e}") from e

        result.size = size
        result.checksum = {alg: hasher.hexdigest() for alg, hasher in hashers.items()}
        return head

    def _siegfried_binary(self) -> str | None:
        with self._lock:
            if not self._siegfried_checked:
                self._siegfried_path = shutil.which(self.siegfried)
                self._siegfried_checked = True
                if self._siegfried_path is None:
                    logger.warning("siegfried binary '%s' not found, skipping PRONOM identification", self.siegfried)
            return self._siegfried_path

    def _siegfried(self, full: Path, result: Identification) -> None:
        binary = self._siegfried_binary()
        if binary is None:
            return
        try:
            proc = subprocess.run(
                [binary, "-json", str(full)],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as e:
            raise EngineError(f"cannot run {binary}: {e}") from e
        if proc.returncode != 0:
            raise EngineError(f"siegfried failed on {full}: {proc.stderr.strip()}")

        pronom, mimetype = parse_siegfried(proc.stdout)
        result.pronom = pronom
        if mimetype and result.mimetype in ("", "application/octet-stream", "text/plain"):
            result.mimetype = mimetype
            result.type, _, result.subtype = mimetype.partition("/")

    def _xml(self, full: Path, head: bytes, result: Identification) -> None:
        if result.mimetype not in XML_MIMETYPES and not head.lstrip().startswith(b"<?xml"):
            return
        try:
            for _event, element in ET.iterparse(full, events=("start",)):
                result.subtype = element.tag.rpartition("}")[2]
                break
        except (ET.ParseError, OSError) as e:
            logger.debug("cannot parse xml %s: %s", full, e)

    def _image(self, full: Path, result: Identification) -> None:
        if result.type != "image":
            return
        try:
            with Image.open(full) as img:
                result.width, result.height = int(img.width), int(img.height)
        except (OSError, Image.DecompressionBombError) as e:
            logger.debug("cannot open image %s: %s", full, e)

    def _audio(self, full: Path, result: Identification) -> None:
        if result.type not in ("audio", "video"):
            return
        try:
            media = mutagen.File(str(full))
        except (mutagen.MutagenError, OSError) as e:
            logger.debug("cannot read media %s: %s", full, e)
            return
        if media is not None and media.info is not None:
            result.duration = int(round(getattr(media.info, "length", 0) or 0))


def detect_mimetype(name: str, head: bytes) -> str:
    """Guess a mimetype from magic bytes, then XML prolog, file extension and content."""
    if not head:
        return "application/x-empty"
    kind = filetype.guess(head)
    if kind is not None:
        return kind.mime
    if head.lstrip().startswith(b"<?xml"):
        return "application/xml"
    guess, _ = mimetypes.guess_type(name, strict=False)
    if guess:
        return guess
    if b"\x00" not in head:
        try:
            head.decode("utf-8")
            return "text/plain"
        except UnicodeDecodeError as e:
            # a multibyte sequence cut at the end of the head buffer is still text
            if e.start >= len(head) - 3:
                return "text/plain"
    return "application/octet-stream"


def parse_siegfried(output: str) -> tuple[str, str]:
    """Extract (PRONOM id, mimetype) from ``sf -json`` output."""
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise EngineError(f"cannot decode siegfried output: {e}") from e
    for entry in data.get("files") or []:
        for match in entry.get("matches") or []:
            if match.get("ns") == "pronom" and match.get("id", "UNKNOWN") != "UNKNOWN":
                return match["id"], match.get("mime", "")
    return "", ""
