"""Application and scenario loading utilities."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence, TypeVar

import yaml

from .models import ApplicationConfig, ScenarioConfig

YAML_SUFFIXES = (".yaml", ".yml")

ConfigT = TypeVar("ConfigT", ApplicationConfig, ScenarioConfig)


def resolve_config_paths(spec: str, base_dir: Optional[Path] = None) -> list[Path]:
    """Expand a comma-separated list of files and directories into YAML paths."""

    paths: list[Path] = []
    for item in (part.strip() for part in spec.split(",")):
        if not item:
            continue
        candidate = Path(item)
        if not candidate.exists() and base_dir is not None and (base_dir / item).exists():
            candidate = base_dir / item
        if candidate.is_dir():
            paths.extend(sorted(p for p in candidate.iterdir() if p.suffix in YAML_SUFFIXES and p.is_file()))
        elif candidate.is_file():
            paths.append(candidate)
        else:
            raise FileNotFoundError(f"Path not found: {item}")
    return paths


def parse_params(raw: Optional[str]) -> dict[str, str]:
    """Parse ``key=value,key2=value2``; values may themselves contain ``=``."""

    params: dict[str, str] = {}
    if not raw:
        return params
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if key.strip() and sep:
            params[key.strip()] = value.strip()
    return params


def substitute_params(url: str, params: Mapping[str, str]) -> str:
    for key, value in params.items():
        url = url.replace("{{" + key + "}}", value)
    return url


def _read_mapping(path: Path) -> dict[str, Any]:
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def load_application(path: Path, params: Optional[Mapping[str, str]] = None) -> ApplicationConfig:
    """Load and validate an application YAML file."""

    data = _read_mapping(path)
    if not data.get("url"):
        raise ValueError(f'Application config must contain a "url" field: {path}')
    data["url"] = substitute_params(str(data["url"]), params or {})
    data["name"] = path.stem
    data["steps"] = data.get("steps") or []
    data["tags"] = data.get("tags") or []
    return ApplicationConfig.model_validate(data)


def load_scenario(path: Path) -> ScenarioConfig:
    """Load and validate a scenario YAML file."""

    data = _read_mapping(path)
    data["name"] = path.stem
    data["steps"] = data.get("steps") or []
    data["tags"] = data.get("tags") or []
    return ScenarioConfig.model_validate(data)


def parse_tags(raw: Optional[str]) -> list[str]:
    if not raw:
        return []
    return [tag.strip() for tag in raw.split(",") if tag.strip()]


def filter_by_tags(items: Sequence[ConfigT], tags: Iterable[str]) -> list[ConfigT]:
    """Keep items sharing at least one tag; no tags means keep everything."""

    wanted = set(tags)
    if not wanted:
        return list(items)
    return [item for item in items if wanted.intersection(item.tags)]

