"""User-defined REPL commands: Markdown prompt templates run as ``/cmd:<name>``."""

import re
from dataclasses import dataclass
from pathlib import Path

from . import fmt
from .config import global_config_dir

COMMAND_PREFIX = "/cmd:"

_ARGS_RE = re.compile(r"\{\{\s*\.ARGS\s*\}\}")


@dataclass
class CustomCommand:
    name: str  # file stem, invoked as /cmd:<name>
    path: Path

    def render(self, args: str) -> str:
        """Read the template and substitute ``args`` for ``{{.ARGS}}``.

        Raises OSError or UnicodeDecodeError if the file cannot be read.
        """
        return expand_template(self.path.read_text(encoding="utf-8"), args)


def commands_dir() -> Path:
    return global_config_dir() / "cmds"


def expand_template(template: str, args: str) -> str:
    """Replace every ``{{.ARGS}}`` placeholder with ``args``.

    A template without the placeholder is returned unchanged and the
    arguments are dropped.
    """
    return _ARGS_RE.sub(lambda _: args, template)


def discover_commands(
    directory: Path | None = None, verbose: bool = False
) -> dict[str, CustomCommand]:
    """Find ``*.md`` templates under ``directory`` (default ``~/.config/tandem/cmds``).

    Subdirectories are searched too; the command name is the file stem and
    the first file found for a name wins.
    """
    directory = commands_dir() if directory is None else directory
    catalog: dict[str, CustomCommand] = {}
    if not directory.is_dir():
        return catalog
    try:
        paths = sorted(directory.rglob("*.md"))
    except OSError as e:
        if verbose:
            fmt.warning(f"failed to read commands directory {directory}: {e}")
        return catalog
    for path in paths:
        if not path.is_file():
            continue
        name = path.stem
        if name in catalog:
            if verbose:
                fmt.warning(f"command /cmd:{name} in {path} shadowed by {catalog[name].path}")
            continue
        catalog[name] = CustomCommand(name=name, path=path)
    return catalog


def parse_invocation(line: str) -> tuple[str, str] | None:
    """Split ``/cmd:<name> args...`` into (name, args); None for other input."""
    parts = line.split(None, 1)
    if not parts or not parts[0].lower().startswith(COMMAND_PREFIX):
        return None
    args = parts[1].strip() if len(parts) > 1 else ""
    return parts[0][len(COMMAND_PREFIX) :], args
