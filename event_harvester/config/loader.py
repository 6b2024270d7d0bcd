"""Where configuration lives on disk and how it is read back into models.

The harvester home holds ``data/global_config.yaml``, one YAML file per
source under ``data/sources/`` and the ``logs/`` tree. ``$EVENT_HARVESTER_HOME``
overrides the home directory for every locator created in the process.
"""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

import yaml
from pydantic import ValidationError

from ..errors import ConfigurationError
from .models import EventSource, GlobalConfig

HOME_ENV_VAR = "EVENT_HARVESTER_HOME"
CONFIG_EXTENSIONS = (".yaml", ".yml", ".json")

_SEPARATORS = re.compile(r"[\W_]+")


def _yaml_dump(payload: dict, stream: Any) -> None:
    yaml.safe_dump(payload, stream, allow_unicode=True, sort_keys=False)


def _json_dump(payload: dict, stream: Any) -> None:
    json.dump(payload, stream, indent=2, ensure_ascii=False)


# suffix -> (parse text, dump mapping to stream)
_CODECS: dict[str, tuple[Callable[[str], Any], Callable[[dict, Any], None]]] = {
    ".yaml": (yaml.safe_load, _yaml_dump),
    ".yml": (yaml.safe_load, _yaml_dump),
    ".json": (json.loads, _json_dump),
}


def _codec(path: Path) -> tuple[Callable[[str], Any], Callable[[dict, Any], None]]:
    try:
        return _CODECS[path.suffix.lower()]
    except KeyError:
        raise ConfigurationError(f"Unsupported configuration format {path.suffix!r}: {path}") from None


def load_mapping(path: Path) -> dict:
    parse, _ = _codec(path)
    try:
        document = parse(path.read_text(encoding="utf-8"))
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigurationError(f"{path} holds a {type(document).__name__}, expected a mapping")
    return document


def dump_mapping(path: Path, payload: dict) -> None:
    _, dump = _codec(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as stream:
        dump(payload, stream)


def source_file_stem(source_id: str) -> str:
    """``"City Events/Weekly"`` -> ``"city-events-weekly"``."""

    return _SEPARATORS.sub("-", source_id.casefold()).strip("-")


@dataclass(slots=True)
class ConfigLocator:
    project_root: Path | None = None

    def __post_init__(self) -> None:
        override = os.environ.get(HOME_ENV_VAR)
        home = Path(override).expanduser() if override else (self.project_root or Path.cwd())
        self.project_root = home.resolve()
        self.ensure_directories()

    @property
    def data_dir(self) -> Path:
        return self.project_root / "data"

    @property
    def sources_dir(self) -> Path:
        return self.data_dir / "sources"

    @property
    def logs_dir(self) -> Path:
        return self.project_root / "logs"

    def ensure_directories(self) -> None:
        for directory in (self.sources_dir, self.logs_dir):
            directory.mkdir(parents=True, exist_ok=True)

    def global_config_path(self) -> Path:
        return self.data_dir / "global_config.yaml"

    def resolve(self, path: Path) -> Path:
        """Relative paths in the global config are taken from the home directory."""

        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


class ConfigRepository:
    """Validated access to the global config and the per-source files.

    The global config is cached after the first load; a missing file is
    written out with defaults so operators have something to edit.
    """

    def __init__(self, locator: ConfigLocator | None = None) -> None:
        self.locator = locator or ConfigLocator()
        self._global: GlobalConfig | None = None

    def load_global_config(self) -> GlobalConfig:
        if self._global is None:
            path = self.locator.global_config_path()
            if not path.exists():
                self.save_global_config(GlobalConfig())
            else:
                self._global = self._validate(GlobalConfig, load_mapping(path), f"global configuration {path}")
        return self._global

    def save_global_config(self, config: GlobalConfig) -> None:
        dump_mapping(self.locator.global_config_path(), config.model_dump(mode="json"))
        self._global = config

    # ------------------------------------------------------------------
    def source_path(self, source_id: str) -> Path:
        stem = source_file_stem(source_id)
        if not stem:
            raise ConfigurationError(f"Source id {source_id!r} has no characters usable in a file name")
        return self.locator.sources_dir / f"{stem}.yaml"

    def list_source_files(self) -> Iterator[Path]:
        candidates = (path for path in self.locator.sources_dir.iterdir() if path.is_file())
        yield from sorted(path for path in candidates if path.suffix.lower() in CONFIG_EXTENSIONS)

    def list_sources(self) -> list[EventSource]:
        return [self.load_source(path) for path in self.list_source_files()]

    def load_source(self, identifier: str | Path) -> EventSource:
        path = identifier if isinstance(identifier, Path) else self.source_path(identifier)
        if not path.is_file():
            raise FileNotFoundError(f"No configuration file for source {identifier}")
        return self.parse_source(load_mapping(path), origin=str(path))

    def parse_source(self, payload: dict, origin: str = "<payload>") -> EventSource:
        return self._validate(EventSource, payload, f"source configuration {origin}")

    def read_sources_file(self, path: Path) -> list[EventSource]:
        """An import file holds either one source or a ``sources:`` list of them."""

        document = load_mapping(path)
        if "sources" not in document:
            return [self.parse_source(document, origin=str(path))]
        entries = document["sources"]
        if not isinstance(entries, list):
            raise ConfigurationError(f"{path}: 'sources' must be a list")
        return [self.parse_source(entry, origin=f"{path}[{position}]") for position, entry in enumerate(entries)]

    def save_source(self, source: EventSource) -> Path:
        path = self.source_path(source.id)
        dump_mapping(path, source.model_dump(mode="json"))
        return path

    def delete_source(self, source_id: str) -> None:
        self.source_path(source_id).unlink(missing_ok=True)

    @staticmethod
    def _validate(model: Any, payload: Any, what: str) -> Any:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid {what}: {exc}") from exc


__all__ = [
    "CONFIG_EXTENSIONS",
    "ConfigLocator",
    "ConfigRepository",
    "HOME_ENV_VAR",
    "dump_mapping",
    "load_mapping",
    "source_file_stem",
]
