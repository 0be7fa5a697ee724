"""Configuration file loading and merging for fsagent.

Reads TOML config from ~/.config/fsagent/config.toml (global) and
<base_dir>/fsagent.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .agent import DEFAULT_MAX_ITERATIONS
from .model import DEFAULT_MODEL, DEFAULT_PROVIDER, PROVIDERS
from .report import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "account_id": str,
    "gateway": str,
    "max_iterations": int,
    "system_prompt": str,
    "yes": bool,
    "color": bool,
    "quiet": bool,
}

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": DEFAULT_PROVIDER,
    "model": DEFAULT_MODEL,
    "api_key": None,
    "base_url": None,
    "account_id": None,
    "gateway": None,
    "max_iterations": DEFAULT_MAX_ITERATIONS,
    "system_prompt": None,
    "yes": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "fsagent"
    return Path.home() / ".config" / "fsagent"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and values in a parsed config dict.

    Raises ConfigError for type mismatches or bad values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, "
                f"got {type(value).__name__}"
            )

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDERS)}, "
            f"got {config['provider']!r}"
        )
    if "max_iterations" in config and config["max_iterations"] < 1:
        raise ConfigError(f"{source}: 'max_iterations' must be at least 1")


def _load_single(path: Path, label: str) -> dict:
    """Parse one config file, keeping only known keys. {} when absent."""
    if not path.is_file():
        return {}
    try:
        config = tomllib.loads(path.read_text(encoding="utf-8"))
    except (tomllib.TOMLDecodeError, UnicodeDecodeError) as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {key: config[key] for key in CONFIG_KEYS if key in config}


def _inside_git_checkout(directory: Path) -> bool:
    return any((d / ".git").exists() for d in (directory, *directory.parents))


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn when a project fsagent.toml that holds an api_key lives in git."""
    if "api_key" in config and _inside_git_checkout(config_path.parent):
        print(
            f"warning: {config_path}: api_key is set in a project file under "
            "version control. Use CF_AIG_TOKEN, GEMINI_API_KEY or "
            "OPENAI_API_KEY instead.",
            file=sys.stderr,
        )


# --- Public API ---


def load_config(base_dir: Path | str) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "fsagent.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    After processing all config keys, sweeps remaining _UNSET sentinels and
    replaces them with hardcoded defaults from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive --color/--no-color pair
    if "color" in config:
        if _is_unset("color") and _is_unset("no_color"):
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


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# fsagent configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/fsagent.toml' if project else '~/.config/fsagent/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "cloudflare"        # "cloudflare" | "gemini" | "generic"',
        f'# model = "{DEFAULT_MODEL}"',
        '# api_key = "..."                # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        '# account_id = "..."             # Cloudflare account (CF_ACCOUNT_ID)',
        '# gateway = "..."                # Cloudflare AI Gateway name (CF_GATEWAY_NAME)',
        "",
        "# --- Agent behaviour ---",
        f"# max_iterations = {DEFAULT_MAX_ITERATIONS}",
        '# system_prompt = "You are a helpful Coding Assistant."',
        "# yes = false                    # true = never ask before writes/deletes",
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)
