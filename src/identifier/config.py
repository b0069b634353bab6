"""Configuration module for identifier.

Loads configuration from a TOML file (an embedded default when none is given)
and applies environment variable overrides.
"""

import hashlib
import json
import logging
import os
import tomllib
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from identifier.errors import ConfigError
from identifier.indexer.engine import ACTIONS, normalize_actions

DEFAULT_CONFIG = """
[log]
level = "ERROR"
# file = "identifier.log"

[indexer]
actions = ["siegfried", "xml"]
checksums = ["sha512"]
concurrent = 3
siegfried = "sf"

[ai]
model = "google-gemini-2.0-pro-exp-02-05"
apikey = "%%GEMINI_API_KEY%%"
sample = 10
batch = 25
"""

LOG_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "NOTICE": logging.INFO,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def parse_log_level(level: str) -> int:
    """Map a level name (CRITICAL|ERROR|WARNING|NOTICE|INFO|DEBUG) to a logging level."""
    try:
        return LOG_LEVELS[level.strip().upper()]
    except KeyError:
        raise ConfigError(
            f"Invalid log level '{level}', expected one of {', '.join(LOG_LEVELS)}"
        ) from None


@dataclass
class LogConfig:
    """Logging configuration."""

    level: str = "ERROR"
    file: Path | None = None


@dataclass
class IndexerConfig:
    """Identification settings."""

    actions: list[str] = field(default_factory=lambda: ["siegfried", "xml"])
    checksums: list[str] = field(default_factory=lambda: ["sha512"])
    concurrent: int = 3
    siegfried: str = "sf"  # name or path of the siegfried binary


@dataclass
class AIConfig:
    """AI description service settings."""

    model: str = "google-gemini-2.0-pro-exp-02-05"  # <driver>-<model>
    apikey: str = "%%GEMINI_API_KEY%%"  # %%NAME%% is read from the environment
    sample: int = 10  # files listed per folder
    batch: int = 25  # folders per request


@dataclass
class Config:
    """Application configuration."""

    log: LogConfig = field(default_factory=LogConfig)
    indexer: IndexerConfig = field(default_factory=IndexerConfig)
    ai: AIConfig = field(default_factory=AIConfig)
    source: str = "embedded"

    @classmethod
    def load(cls, path: Path | None = None, env: Mapping[str, str] | None = None) -> "Config":
        """Load the configuration file (or the embedded default) and apply env overrides.

        Args:
            path: TOML file replacing the embedded default configuration.
            env: Environment to read overrides from (defaults to os.environ).

        Raises:
            ConfigError: If the file cannot be read or contains invalid values.
        """
        if path is not None:
            path = Path(path).expanduser()
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as e:
                raise ConfigError(f"Cannot read config file {path}: {e}") from e
            conf = cls.from_toml(text, source=str(path))
        else:
            conf = cls.from_toml(DEFAULT_CONFIG)
        conf.apply_env(os.environ if env is None else env)
        return conf

    @classmethod
    def from_toml(cls, text: str, source: str = "embedded") -> "Config":
        try:
            data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {source}: {e}") from e

        log = _section(data, "log")
        indexer = _section(data, "indexer")
        ai = _section(data, "ai")

        conf = cls(source=source)
        conf.log.level = _string(log, "log.level", conf.log.level)
        log_file = _string(log, "log.file", "")
        conf.log.file = Path(log_file).expanduser() if log_file else None

        conf.indexer.actions = _string_list(indexer, "indexer.actions", conf.indexer.actions)
        conf.indexer.checksums = _string_list(indexer, "indexer.checksums", conf.indexer.checksums)
        conf.indexer.concurrent = _integer(indexer, "indexer.concurrent", conf.indexer.concurrent)
        conf.indexer.siegfried = _string(indexer, "indexer.siegfried", conf.indexer.siegfried)

        conf.ai.model = _string(ai, "ai.model", conf.ai.model)
        conf.ai.apikey = _string(ai, "ai.apikey", conf.ai.apikey)
        conf.ai.sample = _integer(ai, "ai.sample", conf.ai.sample)
        conf.ai.batch = _integer(ai, "ai.batch", conf.ai.batch)

        conf.validate()
        return conf

    def apply_env(self, env: Mapping[str, str]) -> None:
        """Apply IDENTIFIER_* environment overrides."""
        if level := env.get("IDENTIFIER_LOG_LEVEL"):
            self.log.level = level
        if concurrent := env.get("IDENTIFIER_CONCURRENT"):
            try:
                self.indexer.concurrent = int(concurrent)
            except ValueError as e:
                raise ConfigError(f"Invalid IDENTIFIER_CONCURRENT value '{concurrent}': {e}") from e
        if siegfried := env.get("IDENTIFIER_SIEGFRIED"):
            self.indexer.siegfried = siegfried
        if model := env.get("IDENTIFIER_AI_MODEL"):
            self.ai.model = model
        if apikey := env.get("IDENTIFIER_AI_APIKEY"):
            self.ai.apikey = apikey
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: On the first invalid value.
        """
        parse_log_level(self.log.level)

        unknown = [a for a in normalize_actions(self.indexer.actions) if a not in ACTIONS]
        if unknown:
            raise ConfigError(
                f"Unknown indexer actions {', '.join(unknown)}, expected any of {', '.join(ACTIONS)}"
            )
        if not self.indexer.checksums:
            raise ConfigError("At least one checksum algorithm is required")
        for alg in self.indexer.checksums:
            if alg not in hashlib.algorithms_available:
                raise ConfigError(f"Unknown checksum algorithm '{alg}'")
        if self.indexer.concurrent < 1:
            raise ConfigError(f"indexer.concurrent must be at least 1, got {self.indexer.concurrent}")

        if "-" not in self.ai.model:
            raise ConfigError(f"ai.model '{self.ai.model}' must consist of driver- and modelname")
        if self.ai.sample < 1:
            raise ConfigError(f"ai.sample must be at least 1, got {self.ai.sample}")
        if self.ai.batch < 1:
            raise ConfigError(f"ai.batch must be at least 1, got {self.ai.batch}")

    @property
    def log_level(self) -> int:
        return parse_log_level(self.log.level)

    def to_toml(self) -> str:
        """Render the effective configuration as TOML."""
        lines = [f"# source: {self.source}", "", "[log]", f"level = {_quote(self.log.level)}"]
        if self.log.file is not None:
            lines.append(f"file = {_quote(str(self.log.file))}")
        lines += [
            "",
            "[indexer]",
            f"actions = [{', '.join(_quote(a) for a in self.indexer.actions)}]",
            f"checksums = [{', '.join(_quote(c) for c in self.indexer.checksums)}]",
            f"concurrent = {self.indexer.concurrent}",
            f"siegfried = {_quote(self.indexer.siegfried)}",
            "",
            "[ai]",
            f"model = {_quote(self.ai.model)}",
            f"apikey = {_quote(self.ai.apikey)}",
            f"sample = {self.ai.sample}",
            f"batch = {self.ai.batch}",
        ]
        return "\n".join(lines) + "\n"


def _quote(value: str) -> str:
    return json.dumps(value, ensure_ascii=False)


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a table")
    return section


def _string(section: dict[str, Any], name: str, default: str) -> str:
    value = section.get(name.rpartition(".")[2], default)
    if not isinstance(value, str):
        raise ConfigError(f"{name} must be a string, got {value!r}")
    return value


def _integer(section: dict[str, Any], name: str, default: int) -> int:
    value = section.get(name.rpartition(".")[2], default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{name} must be an integer, got {value!r}")
    return value


def _string_list(section: dict[str, Any], name: str, default: list[str]) -> list[str]:
    value = section.get(name.rpartition(".")[2], default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{name} must be a list of strings, got {value!r}")
    return list(value)
