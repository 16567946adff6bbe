"""Configuration file loading and merging for tandem.

Reads TOML config from ~/.config/tandem/config.toml (global) and
<base_dir>/tandem.toml (project). Precedence: CLI > project > global >
environment > defaults.
"""

import argparse
import os
import subprocess
import sys
import tomllib
from pathlib import Path
from typing import Any

from .errors import ConfigError

_UNSET = object()  # Sentinel for "not set by CLI"

PROVIDER_NAMES = ("openai", "anthropic")
DEFAULT_MODELS = {
    "openai": "o4-mini",
    "anthropic": "claude-3-7-sonnet-latest",
}
ENV_PREFIXES = {"openai": "OPENAI", "anthropic": "ANTHROPIC"}

API_KEY_SHELL_TIMEOUT = 30


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "api_key_shell": str,
    "base_url": str,
    "max_output_tokens": int,
    "context_window": int,
    "reasoning_effort": str,
    "temperature": (int, float),
    "max_turns": int,
    "system_prompt": str,
    "no_system_prompt": bool,
    "system_files": list,
    "no_rules": bool,
    "enabled_tools": list,
    "base_dir": str,
    "quiet": bool,
    "color": bool,
    "debug": bool,
    "log_file": str,
    "no_cost": bool,
}

_LIST_OF_STR_KEYS = {"system_files", "enabled_tools"}

_REASONING_EFFORTS = ("low", "medium", "high")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": None,
    "model": None,
    "api_key": None,
    "api_key_shell": None,
    "base_url": None,
    "max_output_tokens": 20000,
    "context_window": None,
    "reasoning_effort": "medium",
    "temperature": None,
    "max_turns": 100,
    "system_prompt": None,
    "no_system_prompt": False,
    "system_files": ["AI.md", "CLAUDE.md"],
    "no_rules": False,
    "enabled_tools": None,
    "base_dir": ".",
    "quiet": False,
    "color": False,
    "no_color": False,
    "debug": False,
    "log_file": None,
    "no_cost": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "tandem"
    return Path.home() / ".config" / "tandem"


def _type_name(expected: type | tuple[type, ...]) -> str:
    """Format an expected type spec as a human-readable string."""
    if expected is list:
        return "list"
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
        # bool is a subclass of int in Python, so isinstance(True, int) is True.
        # Reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, "
                f"got {type(value).__name__}"
            )

        if key in _LIST_OF_STR_KEYS:
            for i, elem in enumerate(value):
                if not isinstance(elem, str):
                    raise ConfigError(
                        f"{source}: {key}[{i}]: expected string, "
                        f"got {type(elem).__name__}"
                    )

    if "provider" in config and config["provider"] not in PROVIDER_NAMES:
        raise ConfigError(
            f"{source}: 'provider' must be one of {', '.join(PROVIDER_NAMES)}, "
            f"got {config['provider']!r}"
        )
    if (
        "reasoning_effort" in config
        and config["reasoning_effort"] not in _REASONING_EFFORTS
    ):
        raise ConfigError(
            f"{source}: 'reasoning_effort' must be one of "
            f"{', '.join(_REASONING_EFFORTS)}"
        )
    for key in ("max_output_tokens", "context_window", "max_turns"):
        if key in config and config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be >= 1")

    if config.get("system_prompt") and config.get("no_system_prompt"):
        raise ConfigError(
            f"{source}: 'system_prompt' and 'no_system_prompt' are mutually exclusive"
        )


def _resolve_paths(config: dict, config_dir: Path) -> None:
    """Resolve relative paths in config against the config file's parent directory."""
    for key in ("log_file", "base_dir"):
        if key in config:
            p = Path(config[key]).expanduser()
            config[key] = str(p if p.is_absolute() else config_dir / p)


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider api_key_shell or an "
                f"environment variable.",
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


def run_api_key_shell(command: str) -> str:
    """Run ``command`` through the shell and return its trimmed stdout."""
    try:
        proc = subprocess.run(
            command,
            shell=True,
            capture_output=True,
            text=True,
            timeout=API_KEY_SHELL_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        raise ConfigError(
            f"api_key_shell timed out after {API_KEY_SHELL_TIMEOUT}s: {command}"
        )
    except OSError as e:
        raise ConfigError(f"api_key_shell failed to start: {e}")
    if proc.returncode != 0:
        detail = proc.stderr.strip() or f"exit code {proc.returncode}"
        raise ConfigError(f"api_key_shell failed: {detail}")
    key = proc.stdout.strip()
    if not key:
        raise ConfigError("api_key_shell produced no output")
    return key


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with config-canonical keys. Only keys that were
    actually set in config files are included (no defaults injected).
    """
    config_dir = global_config_dir()
    global_path = config_dir / "config.toml"
    global_config = _load_single(global_path, str(global_path))
    if global_config:
        _resolve_paths(global_config, global_path.parent)

    project_path = Path(base_dir).resolve() / "tandem.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)
        _resolve_paths(project_config, project_path.parent)

    merged = {**global_config, **project_config}

    # Re-validate mutual exclusion on merged result (could conflict across files)
    if merged.get("system_prompt") and merged.get("no_system_prompt"):
        raise ConfigError(
            "'system_prompt' and 'no_system_prompt' are mutually exclusive "
            "(set across global and project config)"
        )
    return merged


def default_provider(environ=None) -> str:
    """anthropic when ANTHROPIC_API_KEY is set, openai otherwise."""
    env = os.environ if environ is None else environ
    return "anthropic" if env.get("ANTHROPIC_API_KEY") else "openai"


def apply_env(values: dict, environ=None) -> None:
    """Fill provider, credentials, model and base URL from the environment.

    Only keys that are missing or None in ``values`` are touched. An
    ``api_key_shell`` command, when configured, is preferred over the
    environment key.
    """
    env = os.environ if environ is None else environ
    if not values.get("provider"):
        values["provider"] = default_provider(env)
    if values["provider"] not in ENV_PREFIXES:
        raise ConfigError(f"unknown provider {values['provider']!r}")
    prefix = ENV_PREFIXES[values["provider"]]

    if not values.get("api_key"):
        if values.get("api_key_shell"):
            values["api_key"] = run_api_key_shell(values["api_key_shell"])
        else:
            values["api_key"] = env.get(f"{prefix}_API_KEY")
    if not values.get("model"):
        values["model"] = env.get(f"{prefix}_MODEL") or DEFAULT_MODELS[values["provider"]]
    if not values.get("base_url"):
        values["base_url"] = env.get(f"{prefix}_BASE_URL")


def apply_config_to_args(args: argparse.Namespace, config: dict, environ=None) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value.

    For each config key, checks if the CLI value is still _UNSET and if so
    applies the config value. Remaining sentinels are filled from the
    environment where one applies, then from _ARGPARSE_DEFAULTS.
    """

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # Special handling for color: single config key controls mutual-exclusive pair
    if "color" in config:
        color_val = config["color"]
        if _is_unset("color") and _is_unset("no_color"):
            args.color = color_val
            args.no_color = not color_val

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    env_keys = ("provider", "api_key", "api_key_shell", "model", "base_url")
    resolved = {k: None if _is_unset(k) else getattr(args, k) for k in env_keys}
    apply_env(resolved, environ)
    for key, value in resolved.items():
        setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, list(default) if isinstance(default, list) else default)


def config_to_session_kwargs(config: dict, environ=None) -> dict:
    """Convert a config dict to Session constructor kwargs.

    Resolves provider, credentials and model the same way the CLI does, and
    drops keys that only concern the terminal front end.
    """
    _DROP_KEYS = {"color", "quiet", "debug", "log_file", "no_cost", "api_key_shell"}

    values = dict(config)
    apply_env(values, environ)
    return {k: v for k, v in values.items() if k not in _DROP_KEYS}


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# tandem configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/tandem.toml' if project else '~/.config/tandem/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        '# provider = "anthropic"          # "openai" | "anthropic"',
        '# model = "claude-3-7-sonnet-latest"',
        '# api_key_shell = "pass show anthropic"   # command printing the key',
        '# api_key = "sk-..."               # prefer env vars or api_key_shell',
        '# base_url = "https://..."',
        "",
        "# --- Generation parameters ---",
        "# max_output_tokens = 20000",
        "# context_window = 80000",
        '# reasoning_effort = "medium"     # OpenAI reasoning models only',
        "# temperature = 0.7",
        "",
        "# --- Agent behaviour ---",
        "# max_turns = 100",
        '# system_prompt = "You are a helpful assistant."',
        "# no_system_prompt = false",
        '# system_files = ["AI.md", "CLAUDE.md"]',
        "# no_rules = false",
        '# enabled_tools = ["Bash", "View", "Ls", "FindFiles", "Grep", "Edit", "Replace"]',
        "",
        "# --- Output ---",
        "# quiet = false",
        "# color = false",
        "# no_cost = false",
        "# debug = false",
        '# log_file = "tandem.log"',
        "",
    ]
    return "\n".join(lines)
