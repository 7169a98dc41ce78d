"""Configuration file loading and backend profile resolution for higharch.

Reads TOML config from ~/.config/higharch/config.toml (global) and
<base_dir>/higharch.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "backend_timeout": (int, float),
    "approval_timeout": (int, float),
    "command_timeout": (int, float),
    "max_tool_rounds": int,
    "stream": bool,
    "instructions": str,
    "yes": bool,
    "color": bool,
    "quiet": bool,
}

_POSITIVE_KEYS = {
    "backend_timeout",
    "approval_timeout",
    "command_timeout",
    "max_tool_rounds",
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": "echo",
    "model": None,
    "api_key": None,
    "base_url": None,
    "backend_timeout": 120.0,
    "approval_timeout": 60.0,
    "command_timeout": 30.0,
    "max_tool_rounds": 10,
    "stream": False,
    "instructions": None,
    "yes": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}

DEFAULT_MODEL = "gpt-4o"

# Credential selection: where each provider lives and which env var holds its key.
PROVIDERS: dict[str, dict[str, str | None]] = {
    "echo": {
        "base_url": "https://echo.router.merit.systems",
        "env": "ECHO_API_KEY",
        "key_prefix": "echo_",
    },
    "openai": {
        "base_url": None,
        "env": "OPENAI_API_KEY",
        "key_prefix": None,
    },
}


@dataclass(frozen=True)
class BackendProfile:
    name: str
    model: str
    base_url: str | None
    api_key: str | None


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "higharch"
    return Path.home() / ".config" / "higharch"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and value ranges in a parsed config dict.

    Raises ConfigError for type mismatches or invalid values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )
        if key in _POSITIVE_KEYS and value <= 0:
            raise ConfigError(f"{source}: {key!r} must be positive, got {value}")

    provider = config.get("provider")
    if provider is not None and provider not in PROVIDERS:
        raise ConfigError(
            f"{source}: unknown provider {provider!r} "
            f"(expected one of: {', '.join(sorted(PROVIDERS))})"
        )


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files
    (no defaults injected). Project values override global ones.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "higharch.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    Remaining _UNSET sentinels are then replaced with hardcoded defaults.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the --color/--no-color pair
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def resolve_profile(
    provider: str = "echo",
    *,
    model: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
) -> BackendProfile:
    """Pick credentials and endpoint for a provider.

    Fails fast with ConfigError when no API key can be found.
    """
    entry = PROVIDERS.get(provider)
    if entry is None:
        raise ConfigError(f"unknown provider {provider!r}")

    env_name = entry["env"]
    key = api_key or os.environ.get(env_name)
    if not key:
        raise ConfigError(
            f"--api-key or {env_name} env var required for {provider} provider"
        )
    prefix = entry["key_prefix"]
    if prefix and not key.startswith(prefix):
        raise ConfigError(
            f"invalid API key format for {provider}: keys start with {prefix!r}"
        )

    bare_model = model or DEFAULT_MODEL
    model_str = bare_model if bare_model.startswith("openai/") else f"openai/{bare_model}"
    return BackendProfile(
        name=provider,
        model=model_str,
        base_url=base_url or entry["base_url"],
        api_key=key,
    )


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# higharch configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/higharch.toml' if project else '~/.config/higharch/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Backend ---",
        '# provider = "echo"               # "echo" | "openai"',
        '# model = "gpt-4o"',
        '# api_key = "echo_..."            # prefer ECHO_API_KEY / OPENAI_API_KEY',
        '# base_url = "https://..."',
        "# stream = false",
        "",
        "# --- Timeouts (seconds) ---",
        "# backend_timeout = 120",
        "# approval_timeout = 60",
        "# command_timeout = 30",
        "",
        "# --- Agent behaviour ---",
        "# max_tool_rounds = 10",
        '# instructions = "You are a helpful assistant that organizes folders."',
        "# yes = false                     # auto-approve exec commands",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)


def write_config(path: Path, project: bool = False) -> Path:
    """Write the template config to path, refusing to overwrite an existing file."""
    path = Path(path)
    if path.exists():
        raise ConfigError(f"{path} already exists, not overwriting")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(generate_config(project=project), encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"cannot write {path}: {e}") from e
    return path
