"""Configuration file loading and merging for consult.

Reads TOML config from ~/.config/consult/config.toml (global) and
<tool_dir>/consult.toml (local). Precedence: CLI > local > global > defaults.
"""

import argparse
import os
import sys
import tomllib
from pathlib import Path
from typing import Any

from .report import ConfigError

# argparse default for flags that config files may fill in
_UNSET = object()

DEFAULT_TOPIC = "general review"
DEFAULT_API_KEY_ENV = "OPENAI_API_KEY"


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "model": str,
    "base_url": str,
    "api_key_env": str,
    "max_output_tokens": int,
    "max_context_tokens": int,
    "temperature": (int, float),
    "max_turns": int,
    "system_prompt": str,
    "state_file": str,
    "threads_dir": str,
    "default_topic": str,
    "color": bool,
    "verbose": bool,
}

_PATH_KEYS = ("state_file", "threads_dir")

# Used for anything neither the command line nor a config file set
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "model": "openai/gpt-5",
    "base_url": None,
    "api_key_env": DEFAULT_API_KEY_ENV,
    "max_output_tokens": 16384,
    "max_context_tokens": None,
    "temperature": None,
    "max_turns": 25,
    "system_prompt": None,
    "state_file": None,
    "threads_dir": None,
    "default_topic": DEFAULT_TOPIC,
    "color": False,
    "no_color": False,
    "verbose": False,
}


def tool_dir() -> Path:
    """Return the directory the tool keeps its .env, local config and state in.

    CONSULT_HOME overrides the default, which is the directory holding the
    consult package.
    """
    home = os.environ.get("CONSULT_HOME")
    if home:
        return Path(home).expanduser()
    return Path(__file__).resolve().parent.parent


def global_config_dir() -> Path:
    base = os.environ.get("XDG_CONFIG_HOME")
    if base:
        return Path(base) / "consult"
    return Path.home() / ".config" / "consult"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate value types in a parsed config dict.

    Raises ConfigError for type mismatches. Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int, so reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    for key in ("max_output_tokens", "max_context_tokens", "max_turns"):
        if key in config and config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be at least 1")


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Anchor relative state paths at the directory of the file that set them."""
    for key in _PATH_KEYS:
        if key not in config:
            continue
        path = Path(config[key]).expanduser()
        config[key] = str(path if path.is_absolute() else config_dir / path)


def _load_single(path: Path, label: str) -> dict:
    """Parse one TOML file into the known keys it sets; a missing file sets none."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e
    except OSError as e:
        raise ConfigError(f"{label}: cannot read file: {e}") from e

    _validate_config(config, label)
    known = {k: v for k, v in config.items() if k in CONFIG_KEYS}
    _resolve_paths(known, path.parent)
    return known


# --- Public API ---


def load_config(base_dir: Path | None = None) -> dict:
    """Merge the global and tool-local config files, local winning.

    Only keys a file actually sets are returned. Defaults are applied later by
    apply_config_to_args().
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    local_path = Path(base_dir if base_dir is not None else tool_dir()) / "consult.toml"
    local_config = _load_single(local_path, str(local_path))

    return {**global_config, **local_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to the argparse namespace where the CLI didn't set a value.

    After processing config keys, remaining _UNSET sentinels are replaced
    with the hardcoded defaults from _ARGPARSE_DEFAULTS.
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


def resolve_state_paths(args: argparse.Namespace) -> tuple[Path, Path]:
    """Return (state_file, threads_dir), filling in the tool-directory defaults."""
    state_file = (
        Path(args.state_file).expanduser()
        if args.state_file
        else tool_dir() / "state.json"
    )
    threads_dir = (
        Path(args.threads_dir).expanduser()
        if args.threads_dir
        else state_file.parent / "threads"
    )
    return state_file, threads_dir


def generate_config() -> str:
    """Text printed by --print-config: every key, commented out."""
    lines = [
        "# consult configuration file",
        "# Global: ~/.config/consult/config.toml, local: <tool dir>/consult.toml",
        "#",
        "# Command-line flags win over anything set here.",
        "",
        "# --- Model ---",
        '# model = "openai/gpt-5"',
        '# base_url = "http://localhost:4000"   # LiteLLM proxy or compatible endpoint',
        '# api_key_env = "OPENAI_API_KEY"',
        "# max_output_tokens = 16384",
        "# max_context_tokens = 200000",
        "# temperature = 0.2",
        "# max_turns = 25            # tool-calling rounds per run",
        '# system_prompt = "You are a careful senior reviewer."',
        "",
        "# --- Session ---",
        '# state_file = "state.json"',
        '# threads_dir = "threads"',
        '# default_topic = "general review"',
        "",
        "# --- UI ---",
        "# color = true        # stderr diagnostics: true forces color, false disables it",
        "# verbose = false",
        "",
    ]
    return "\n".join(lines)
