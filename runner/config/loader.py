import json
import logging
import tomllib
from pathlib import Path
from typing import Any, Mapping

import yaml

from .types import MODES, ConfigError, ProjectConfig, UnitSpec, UnsupportedConfigFormatError

logger = logging.getLogger(__name__)

UNIT_FIELDS = {"name", "cmd", "env", "working_dir"}


def load_project(path: str | Path) -> ProjectConfig:
    manifest = Path(path).expanduser().resolve()

    if not manifest.exists():
        raise ConfigError(f"No manifest at {manifest}")

    if not manifest.is_file():
        raise ConfigError(f"Manifest must be a regular file: {manifest}")

    fmt = _detect_format(manifest)
    raw = _parse_file(manifest, fmt)
    project = _build_project_config(raw, manifest.parent)
    logger.debug(
        "Loaded %s: %d task(s), %d build(s)",
        manifest,
        len(project.tasks),
        len(project.builds),
    )
    return project


def _detect_format(path: Path) -> str:
    match path.suffix:
        case ".json":
            return "json"
        case ".yaml" | ".yml":
            return "yaml"
        case ".toml":
            return "toml"
        case suffix:
            raise UnsupportedConfigFormatError(
                f"{path.name}: cannot read '{suffix or '(no suffix)'}' manifests "
                "(use .json, .yaml, .yml or .toml)"
            )


def _parse_file(path: Path, fmt: str) -> Mapping[str, Any]:
    match fmt:
        case "json":
            return _parse_json(path)
        case "yaml":
            return _parse_yaml(path)
        case "toml":
            return _parse_toml(path)
        case _:
            raise AssertionError("Unreachable")


def _parse_json(path: Path) -> Mapping[str, Any]:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"{path}: malformed JSON at line {exc.lineno}: {exc.msg}") from exc

    return _expect_mapping(path, data)


def _parse_yaml(path: Path) -> Mapping[str, Any]:
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"{path}: malformed YAML: {exc}") from exc

    return _expect_mapping(path, data)


def _parse_toml(path: Path) -> Mapping[str, Any]:
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"{path}: malformed TOML: {exc}") from exc

    return _expect_mapping(path, data)


def _expect_mapping(path: Path, data: Any) -> Mapping[str, Any]:
    if not isinstance(data, Mapping):
        raise ConfigError(
            f"{path}: expected an object with 'tasks' and/or 'builds', "
            f"found {type(data).__name__}"
        )
    return data


def _build_project_config(raw: Mapping[str, Any], root: Path) -> ProjectConfig:
    unknown = [key for key in raw if key not in MODES]
    if unknown:
        raise ConfigError(f"Unexpected top-level key(s): {', '.join(map(str, unknown))}")

    tasks = _build_units(raw.get("tasks"), "tasks", root)
    builds = _build_units(raw.get("builds"), "builds", root)
    return ProjectConfig(root=root, tasks=tasks, builds=builds)


def _build_units(entries: Any, mode: str, root: Path) -> list[UnitSpec]:
    if entries is None:
        return []

    if not isinstance(entries, list):
        raise ConfigError(f"'{mode}' must be a list of entries, found {type(entries).__name__}")

    units: list[UnitSpec] = []
    seen: set[str] = set()

    for index, fields in enumerate(entries):
        if not isinstance(fields, Mapping):
            raise ConfigError(f"{mode}[{index}]: each entry must be an object")

        unit = _build_unit(f"{mode}[{index}]", fields, root)

        # Duplicates still run; the manifest owner is told about it.
        if unit.name in seen:
            logger.warning("Duplicate name in '%s': %s", mode, unit.name)
        seen.add(unit.name)

        units.append(unit)

    return units


def _build_unit(where: str, fields: Mapping[str, Any], root: Path) -> UnitSpec:
    env: dict[str, str] = {}
    working_dir = None

    for field in fields:
        if field not in UNIT_FIELDS:
            raise ConfigError(f"{where}: unknown field '{field}'")

    if "name" not in fields:
        raise ConfigError(f"{where}: missing 'name'")

    if not isinstance(fields["name"], str) or not fields["name"].strip():
        raise ConfigError(f"{where}: 'name' must be a non-empty string")

    name = _text(where, "name", fields["name"].strip())

    if "cmd" not in fields:
        raise ConfigError(f"{name}: missing 'cmd'")

    command = _build_command(name, fields["cmd"])

    if "env" in fields:
        if not isinstance(fields["env"], Mapping):
            raise ConfigError(f"{name}: 'env' must map variable names to strings")

        for key, value in fields["env"].items():
            if not isinstance(key, str) or not key.strip():
                raise ConfigError(f"{name}: env variable names must be non-empty strings")

            if not isinstance(value, str):
                raise ConfigError(f"{name}: env value for {key} must be a string")

            env[_text(name, "env", key.strip())] = _text(name, f"env {key}", value)

    if "working_dir" in fields:
        raw_dir = fields["working_dir"]
        if not isinstance(raw_dir, str) or not raw_dir.strip():
            raise ConfigError(f"{name}: 'working_dir' must be a non-empty path string")

        working_dir = (root / _text(name, "working_dir", raw_dir.strip())).resolve()

    return UnitSpec(name, command, working_dir, env)


def _build_command(name: str, raw: Any) -> str | tuple[str, ...]:
    if isinstance(raw, str):
        if not raw.strip():
            raise ConfigError(f"{name}: 'cmd' is empty")
        return _text(name, "cmd", raw.strip())

    if isinstance(raw, list):
        if not raw:
            raise ConfigError(f"{name}: 'cmd' is empty")

        for item in raw:
            if not isinstance(item, str):
                raise ConfigError(f"{name}: 'cmd' list items must be strings, found {item!r}")
            _text(name, "cmd", item)

        if not raw[0].strip():
            raise ConfigError(f"{name}: 'cmd' names no program")

        return tuple(raw)

    raise ConfigError(f"{name}: 'cmd' must be a string or a list of strings")


def _text(where: str, what: str, value: str) -> str:
    # The OS cannot pass NUL through argv, environ or paths.
    if "\0" in value:
        raise ConfigError(f"{where}: {what} contains a NUL character")
    return value
