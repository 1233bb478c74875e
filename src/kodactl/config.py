"""Configuration loader for kodactl.

Configuration values are merged from several sources, later sources
winning over earlier ones:

1. Built-in defaults.
2. ``~/.config/kodactl/config.yml`` (or an override path).
3. Environment variables prefixed with ``KODACTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export KODACTL_INSTALL_DIR=/opt/koda
    export KODACTL_PM2__BIN=/usr/local/bin/pm2

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses`` so the lifecycle orchestrator can be built against
temporary directories and fake endpoints in tests.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load kodactl configuration. Install with "
        "`pip install kodactl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "KODACTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_ARCHIVE_URL = (
    "https://github.com/cher1shRXD/koda-backend/archive/refs/heads/main.tar.gz"
)


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PackageManagerConfig:
    """How dependencies are installed inside the install directory."""

    bin: str = "pnpm"
    install_args: tuple[str, ...] = ("install",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin": self.bin, "install_args": list(self.install_args)}


@dataclass(frozen=True)
class Pm2Config:
    """Process supervisor integration values."""

    bin: str = "pm2"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"bin": self.bin}


@dataclass(frozen=True)
class SetupConfig:
    """Global tooling installed by ``koda setup``."""

    npm_bin: str = "npm"
    packages: tuple[str, ...] = ("pnpm", "pm2")

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"npm_bin": self.npm_bin, "packages": list(self.packages)}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for kodactl."""

    config_file: Path
    install_dir: Path
    archive_url: str
    app_name: str
    entry_point: str
    interpreter: str
    env_file: str
    outputs_dir: str
    logs_dir: Path
    probe_timeout: float
    fetch_timeout: float
    package_manager: PackageManagerConfig
    pm2: Pm2Config
    setup: SetupConfig

    @property
    def env_path(self) -> Path:
        """Absolute path of the environment file inside the install directory."""
        return self.install_dir / self.env_file

    @property
    def outputs_path(self) -> Path:
        """Absolute path of the clearable outputs directory."""
        return self.install_dir / self.outputs_dir

    @property
    def required_binaries(self) -> tuple[str, ...]:
        """Executables every mutating lifecycle command depends on."""
        return (self.package_manager.bin, self.pm2.bin)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "install_dir": str(self.install_dir),
            "archive_url": self.archive_url,
            "app_name": self.app_name,
            "entry_point": self.entry_point,
            "interpreter": self.interpreter,
            "env_file": self.env_file,
            "outputs_dir": self.outputs_dir,
            "logs_dir": str(self.logs_dir),
            "probe_timeout": self.probe_timeout,
            "fetch_timeout": self.fetch_timeout,
            "package_manager": self.package_manager.to_dict(),
            "pm2": self.pm2.to_dict(),
            "setup": self.setup.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/kodactl/config.yml",
    "install_dir": "~/.koda",
    "archive_url": DEFAULT_ARCHIVE_URL,
    "app_name": "koda-backend",
    "entry_point": "main.js",
    "interpreter": "node",
    "env_file": ".env",
    "outputs_dir": "outputs",
    "logs_dir": "~/.local/state/kodactl/logs",
    "probe_timeout": 30.0,
    "fetch_timeout": 120.0,
    "package_manager": {
        "bin": "pnpm",
        "install_args": ["install"],
    },
    "pm2": {
        "bin": "pm2",
    },
    "setup": {
        "npm_bin": "npm",
        "packages": ["pnpm", "pm2"],
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_NESTED_KEYS: dict[str, set[str]] = {
    "package_manager": {"bin", "install_args"},
    "pm2": {"bin"},
    "setup": {"npm_bin", "packages"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _NESTED_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    for key in ("probe_timeout", "fetch_timeout"):
        value = raw.get(key)
        if value is not None:
            _expect_positive_float(value, key, default=1.0)


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    install_dir = _to_path(raw.get("install_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))

    archive_url = _expect_non_empty(raw.get("archive_url"), "archive_url")
    if not archive_url.startswith(("http://", "https://")):
        raise ConfigError(f"archive_url must be an http(s) URL. Got {archive_url!r}.")

    pm_mapping = _as_dict(raw.get("package_manager"), "package_manager")
    package_manager = PackageManagerConfig(
        bin=_expect_non_empty(pm_mapping.get("bin", "pnpm"), "package_manager.bin"),
        install_args=_expect_str_tuple(
            pm_mapping.get("install_args", ["install"]), "package_manager.install_args"
        ),
    )

    pm2_mapping = _as_dict(raw.get("pm2"), "pm2")
    pm2 = Pm2Config(bin=_expect_non_empty(pm2_mapping.get("bin", "pm2"), "pm2.bin"))

    setup_mapping = _as_dict(raw.get("setup"), "setup")
    setup = SetupConfig(
        npm_bin=_expect_non_empty(setup_mapping.get("npm_bin", "npm"), "setup.npm_bin"),
        packages=_expect_str_tuple(
            setup_mapping.get("packages", ["pnpm", "pm2"]), "setup.packages"
        ),
    )

    return AppConfig(
        config_file=config_file,
        install_dir=install_dir,
        archive_url=archive_url,
        app_name=_expect_non_empty(raw.get("app_name"), "app_name"),
        entry_point=_expect_non_empty(raw.get("entry_point"), "entry_point"),
        interpreter=_expect_non_empty(raw.get("interpreter"), "interpreter"),
        env_file=_expect_relative(raw.get("env_file"), "env_file"),
        outputs_dir=_expect_relative(raw.get("outputs_dir"), "outputs_dir"),
        logs_dir=logs_dir,
        probe_timeout=_expect_positive_float(
            raw.get("probe_timeout"), "probe_timeout", default=30.0
        ),
        fetch_timeout=_expect_positive_float(
            raw.get("fetch_timeout"), "fetch_timeout", default=120.0
        ),
        package_manager=package_manager,
        pm2=pm2,
        setup=setup,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_non_empty(value: object, key: str) -> str:
    text = _expect_str(value, key).strip()
    if not text:
        raise ConfigError(f"{key} must be a non-empty string.")
    return text


def _expect_relative(value: object, key: str) -> str:
    """Return *value* as a path relative to the install directory."""
    text = _expect_non_empty(value, key)
    candidate = PurePosixPath(text)
    if candidate.is_absolute() or ".." in candidate.parts or not candidate.parts:
        raise ConfigError(f"{key} must be a path inside the install directory. Got {text!r}.")
    return str(candidate)


def _expect_str_tuple(value: object, key: str) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(part for part in value.split() if part)
    if not isinstance(value, Sequence):
        raise ConfigError(f"Expected {key} to be a list of strings. Got {type(value).__name__}.")
    items: list[str] = []
    for index, item in enumerate(value):
        if not isinstance(item, str):
            raise ConfigError(f"Expected {key}[{index}] to be a string. Got {item!r}.")
        items.append(item)
    return tuple(items)


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULT_ARCHIVE_URL",
    "PackageManagerConfig",
    "Pm2Config",
    "SetupConfig",
    "load_config",
]
