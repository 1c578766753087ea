"""Data-directory-aware configuration loading for FieldSync."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, MutableMapping, Optional, Tuple

import yaml

REPO_ROOT = Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_DIR = REPO_ROOT / "config"
DEFAULT_DATA_DIR = "~/.fieldsync"
DATA_DIR_ENV = "FIELDSYNC_DATA_DIR"

DiagnosticLevel = Literal["info", "warning", "error"]
ConfigurationStatus = Literal["ready", "missing", "invalid"]


SchemaSpec = Dict[str, Any]

DEFAULT_FULL_SYNC_COLLECTIONS: List[str] = ["templates", "vehicles"]
DEFAULT_PRESERVED_KEYS: List[str] = [
    "app_version",
    "app_installed",
    "update_prompt_shown",
]


CONFIG_SCHEMA: SchemaSpec = {
    "logging": {
        "type": dict,
        "schema": {
            "level": {"type": str, "default": "INFO"},
            "structured": {"type": bool, "default": True},
        },
        "default": {},
    },
    "store": {
        "type": dict,
        "schema": {
            "path": {"type": str, "default": "state/fieldsync.db"},
        },
        "default": {},
    },
    "gateway": {
        "type": dict,
        "schema": {
            "base_url": {"type": str, "default": ""},
            "request_timeout": {"type": (int, float), "default": 10.0},
            "upload_path": {"type": str, "default": ""},
            "auth_token": {"type": str, "default": ""},
        },
        "default": {},
    },
    "connectivity": {
        "type": dict,
        "schema": {
            "probe_url": {"type": str, "default": ""},
            "probe_timeout": {"type": (int, float), "default": 3.0},
            "probe_interval": {"type": (int, float), "default": 30.0},
            "debounce": {"type": (int, float), "default": 1.0},
        },
        "default": {},
    },
    "sync": {
        "type": dict,
        "schema": {
            "base_delay": {"type": (int, float), "default": 1.0},
            "max_delay": {"type": (int, float), "default": 30.0},
            "max_consecutive_failures": {"type": int, "default": 3},
            "force_wait_timeout": {"type": (int, float), "default": 60.0},
            "full_sync_collections": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_FULL_SYNC_COLLECTIONS),
            },
            "refresh_on_reconnect": {"type": bool, "default": False},
            "full_refresh_after_hours": {"type": (int, float), "default": 24},
            "incremental_refresh_after_minutes": {"type": (int, float), "default": 15},
        },
        "default": {},
    },
    "tenant": {
        "type": dict,
        "schema": {
            "preserved_keys": {
                "type": list,
                "item_type": str,
                "default_factory": lambda: list(DEFAULT_PRESERVED_KEYS),
            },
        },
        "default": {},
    },
}


@dataclass
class Diagnostic:
    """Represents a configuration validation or loading issue."""

    level: DiagnosticLevel
    message: str
    source: Optional[Path] = None


@dataclass
class ConfigurationBundle:
    """All configuration data FieldSync needs at runtime."""

    data_dir: Path
    status: ConfigurationStatus
    merged: Dict[str, Any] = field(default_factory=dict)
    repo_defaults: Dict[str, Any] = field(default_factory=dict)
    overrides: Dict[str, Any] = field(default_factory=dict)
    files_loaded: List[Path] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    log_path: Optional[Path] = None

    def section(self, name: str) -> Dict[str, Any]:
        raw = self.merged.get(name, {}) if self.merged else {}
        return raw if isinstance(raw, dict) else {}


def resolve_data_dir(
    env: Optional[Mapping[str, str]] = None,
    default: str = DEFAULT_DATA_DIR,
) -> Path:
    """Resolve the data directory from the environment."""

    env_source = env if env is not None else os.environ
    raw = env_source.get(DATA_DIR_ENV, default)
    return Path(raw).expanduser()


def load_runtime_configuration(data_dir: Optional[Path] = None) -> ConfigurationBundle:
    """Load configuration defaults and data-directory overrides."""

    resolved_dir = data_dir or resolve_data_dir()
    diagnostics: List[Diagnostic] = []
    files_loaded: List[Path] = []

    repo_defaults, repo_files = _load_directory_configs(
        DEFAULT_CONFIG_DIR,
        diagnostics,
        label="repo defaults",
    )
    files_loaded.extend(repo_files)

    status: ConfigurationStatus = "ready"
    overrides: Dict[str, Any] = {}

    if not resolved_dir.exists():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Data directory '{resolved_dir}' does not exist.",
            )
        )
        status = "missing"
    elif not resolved_dir.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Data path '{resolved_dir}' is not a directory.",
            )
        )
        status = "invalid"
    else:
        overrides_dir = resolved_dir / "config"
        overrides, override_files = _load_directory_configs(
            overrides_dir,
            diagnostics,
            label="data overrides",
        )
        files_loaded.extend(override_files)

    merged = deepcopy(repo_defaults)
    _deep_merge_dicts(merged, overrides)

    _validate_schema(merged, diagnostics)

    if status == "ready" and any(diag.level == "error" for diag in diagnostics):
        status = "invalid"

    return ConfigurationBundle(
        data_dir=resolved_dir,
        status=status,
        merged=merged,
        repo_defaults=repo_defaults,
        overrides=overrides,
        files_loaded=files_loaded,
        diagnostics=diagnostics,
    )


def default_configuration(data_dir: Path) -> ConfigurationBundle:
    """Schema defaults only; no files are read."""

    diagnostics: List[Diagnostic] = []
    merged: Dict[str, Any] = {}
    _validate_schema(merged, diagnostics)
    return ConfigurationBundle(data_dir=data_dir, status="ready", merged=merged, diagnostics=diagnostics)


def _load_directory_configs(
    directory: Path,
    diagnostics: List[Diagnostic],
    label: str,
) -> Tuple[Dict[str, Any], List[Path]]:
    """Load all YAML files from a directory, merging them in order."""

    data: Dict[str, Any] = {}
    loaded_files: List[Path] = []

    if not directory.exists():
        diagnostics.append(
            Diagnostic(
                level="warning",
                message=f"No configuration directory found at '{directory}' ({label}).",
                source=directory,
            )
        )
        return data, loaded_files

    if not directory.is_dir():
        diagnostics.append(
            Diagnostic(
                level="error",
                message=f"Configuration path '{directory}' ({label}) is not a directory.",
                source=directory,
            )
        )
        return data, loaded_files

    yaml_files = sorted(directory.glob("*.yml")) + sorted(directory.glob("*.yaml"))

    for yaml_file in yaml_files:
        try:
            content = yaml.safe_load(yaml_file.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            diagnostics.append(
                Diagnostic(
                    level="error",
                    message=f"Failed to parse '{yaml_file}': {exc}",
                    source=yaml_file,
                )
            )
            continue

        if content is None:
            loaded_files.append(yaml_file)
            continue

        if not isinstance(content, MutableMapping):
            diagnostics.append(
                Diagnostic(
                    level="warning",
                    message=f"Ignoring '{yaml_file}' because it does not contain a mapping.",
                    source=yaml_file,
                )
            )
            continue

        _deep_merge_dicts(data, dict(content))
        loaded_files.append(yaml_file)

    if not loaded_files:
        diagnostics.append(
            Diagnostic(
                level="info",
                message=f"No YAML files found under '{directory}' ({label}).",
                source=directory,
            )
        )

    return data, loaded_files


def _deep_merge_dicts(dest: MutableMapping[str, Any], source: Mapping[str, Any]) -> None:
    """Recursively merge mapping values."""

    for key, value in source.items():
        if (
            key in dest
            and isinstance(dest[key], MutableMapping)
            and isinstance(value, Mapping)
        ):
            _deep_merge_dicts(dest[key], value)
        else:
            dest[key] = deepcopy(value)


def _default_from_spec(spec: SchemaSpec) -> Any:
    if "default_factory" in spec and callable(spec["default_factory"]):
        return spec["default_factory"]()
    return deepcopy(spec.get("default"))


def _validate_schema(config: Dict[str, Any], diagnostics: List[Diagnostic]) -> None:
    _validate_section(config, CONFIG_SCHEMA, "config", diagnostics)


def _error(diagnostics: List[Diagnostic], message: str) -> None:
    diagnostics.append(Diagnostic(level="error", message=message))


def _type_name(expected: Any) -> str:
    return ", ".join(t.__name__ for t in _as_tuple(expected))


def _validate_section(
    target: Dict[str, Any],
    schema: SchemaSpec,
    path: str,
    diagnostics: List[Diagnostic],
) -> None:
    """Fill defaults into ``target`` and replace values of the wrong type."""

    if not isinstance(target, dict):
        _error(diagnostics, f"Configuration section '{path}' must be a mapping.")
        return

    for key in sorted(set(target) - set(schema)):
        diagnostics.append(
            Diagnostic(level="warning", message=f"Unknown configuration key '{path}.{key}'.")
        )

    for key, spec in schema.items():
        child_path = f"{path}.{key}"
        if key not in target:
            if "default" not in spec and "default_factory" not in spec:
                continue
            target[key] = _default_from_spec(spec)
        elif spec.get("type") is dict:
            if not isinstance(target[key], dict):
                _error(diagnostics, f"'{child_path}' must be a mapping.")
                target[key] = _default_from_spec(spec) or {}
        elif spec.get("type") is list:
            target[key] = _checked_list(target[key], spec, child_path, diagnostics)
            continue
        elif not _matches(target[key], spec.get("type")):
            _error(diagnostics, f"'{child_path}' must be of type {_type_name(spec['type'])}.")
            target[key] = _default_from_spec(spec)

        if spec.get("type") is dict:
            _validate_section(target[key], spec.get("schema", {}), child_path, diagnostics)


def _checked_list(value: Any, spec: SchemaSpec, path: str, diagnostics: List[Diagnostic]) -> List[Any]:
    if not isinstance(value, list):
        _error(diagnostics, f"'{path}' must be a list.")
        return _default_from_spec(spec) or []
    item_type = spec.get("item_type")
    if item_type is None:
        return value
    kept: List[Any] = []
    for index, item in enumerate(value):
        if _matches(item, item_type):
            kept.append(item)
        else:
            _error(diagnostics, f"'{path}[{index}]' must be of type {_type_name(item_type)}.")
    return kept


def _matches(value: Any, expected: Any) -> bool:
    if not expected:
        return True
    # bool is an int subclass; reject it where a number is expected
    if isinstance(value, bool) and bool not in _as_tuple(expected):
        return False
    return isinstance(value, expected)


def _as_tuple(expected: Any) -> Tuple[type, ...]:
    return expected if isinstance(expected, tuple) else (expected,)


__all__ = [
    "ConfigurationBundle",
    "ConfigurationStatus",
    "DATA_DIR_ENV",
    "DEFAULT_CONFIG_DIR",
    "Diagnostic",
    "default_configuration",
    "load_runtime_configuration",
    "resolve_data_dir",
]
