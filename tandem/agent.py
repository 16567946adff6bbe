"""Agent loop and command-line entry point.

The loop alternates model inference and tool execution until the model
answers without requesting tools. It runs on a worker thread in the CLI and
reports progress through LoopEvent objects put on a queue; the UI thread
renders them and never touches the conversation.
"""

import argparse
import json
import logging
import platform
import queue
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from importlib import metadata
from pathlib import Path

from . import fmt
from .cancel import CancelToken
from .commands import COMMAND_PREFIX, discover_commands, parse_invocation
from .config import (
    _UNSET,
    PROVIDER_NAMES,
    apply_config_to_args,
    generate_config,
    load_config,
)
from .conversation import (
    ASSISTANT,
    USER,
    Conversation,
    ToolCallResult,
    estimate_tokens,
)
from .errors import AgentError, Canceled

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_RULE_FILES = ("AI.md", "CLAUDE.md")
MAX_RULE_CHARS = 10_000
MAX_ARG_LOG = 1000
CANCELED_TOOL_RESULT = "error: tool call canceled by user"

OUTCOME_DONE = "done"
OUTCOME_CANCELED = "canceled"
OUTCOME_EXHAUSTED = "exhausted"

EXIT_ERROR = 1
EXIT_EXHAUSTED = 2
EXIT_CANCELED = 130

_UI_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class LoopEvent:
    """One-way notification from the agent loop to whoever renders it."""

    kind: str
    data: dict = field(default_factory=dict)


@dataclass
class LoopResult:
    outcome: str
    answer: str | None
    turns: int


def _emit(events: "queue.Queue | None", kind: str, **data) -> None:
    if events is not None:
        events.put(LoopEvent(kind, data))


# -- Conversation seeding ----------------------------------------------------


def load_rule_files(
    base_dir: str, filenames=DEFAULT_RULE_FILES
) -> list[tuple[str, str]]:
    """Read the rule files present in ``base_dir``.

    Returns (filename, content) pairs. Missing or unreadable files are
    skipped; content beyond MAX_RULE_CHARS is truncated with a notice.
    """
    loaded = []
    for filename in filenames:
        path = Path(base_dir).resolve() / filename
        if not path.is_file():
            continue
        try:
            with path.open(encoding="utf-8", errors="replace") as f:
                content = f.read(MAX_RULE_CHARS + 1)
        except OSError as e:
            logger.debug("Skipping rule file %s: %s", path, e)
            continue
        if len(content) > MAX_RULE_CHARS:
            content = (
                content[:MAX_RULE_CHARS]
                + f"\n[truncated: {filename} exceeds {MAX_RULE_CHARS} character limit]"
            )
        loaded.append((filename, content))
    return loaded


def seed_rule_files(conversation: Conversation, rules: list[tuple[str, str]]) -> None:
    for filename, content in rules:
        conversation.add_text(USER, f"Contents of {filename}:\n\n{content}")


def build_system_prompt(
    base_dir: str, model: str, system_prompt: str | None = None
) -> str:
    """Base prompt (packaged or custom) followed by an <env> block."""
    if system_prompt:
        content = system_prompt
    else:
        content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8")
    now = datetime.now().astimezone()
    content += (
        "\n\n<env>\n"
        f"Working directory: {Path(base_dir).resolve()}\n"
        f"Platform: {platform.system().lower()}\n"
        f"Date: {now.strftime('%Y-%m-%d %H:%M %Z')}\n"
        f"Model: {model}\n"
        "</env>"
    )
    return content


# -- Agent loop --------------------------------------------------------------


def close_dangling_tool_uses(conversation: Conversation) -> int:
    """Answer tool calls left open by a canceled cycle. Returns how many."""
    pending = conversation.pending_tool_uses()
    for use in pending:
        conversation.add_tool_result(use.id, CANCELED_TOOL_RESULT)
    return len(pending)


def _execute_tool(
    registry, call, *, base_dir: str, cancel: CancelToken, subagent=None
) -> ToolCallResult:
    """Run one tool call; failures come back as error text, never raised."""
    try:
        text = registry.execute(
            call.name,
            call.arguments,
            base_dir=base_dir,
            cancel=cancel,
            subagent=subagent,
        )
    except Exception as e:
        logger.debug("Tool %s raised: %s", call.name, e, exc_info=True)
        return ToolCallResult(call.id, f"Error executing {call.name}: {e}", failed=True)
    return ToolCallResult(call.id, text, failed=text.startswith("error:"))


def run_agent_loop(
    provider,
    registry,
    prompt: str = "",
    *,
    cancel: CancelToken,
    events: "queue.Queue | None" = None,
    max_turns: int = 100,
    base_dir: str = ".",
    subagent=None,
) -> LoopResult:
    """Drive inference and tool execution until the model stops calling tools.

    ``subagent`` is handed to tools that delegate work to a nested loop.
    Provider errors propagate. Cancellation is reported as the "canceled"
    outcome, leaving the conversation as it was last committed.
    """
    conversation = provider.conversation
    closed = close_dangling_tool_uses(conversation)
    if closed:
        logger.info("Closed %d tool call(s) left open by a canceled run", closed)
    if prompt:
        provider.add_message(prompt, USER)

    answer = None
    turns = 0
    while turns < max_turns:
        if cancel.is_canceled:
            return LoopResult(OUTCOME_CANCELED, answer, turns)
        turns += 1

        summaries = provider.summary_count
        started = time.monotonic()
        try:
            result = provider.infer()
        except Canceled:
            return LoopResult(OUTCOME_CANCELED, answer, turns)
        elapsed = time.monotonic() - started

        if provider.summary_count != summaries:
            _emit(events, "summarized", turns=len(conversation))
        _emit(
            events,
            "inference",
            turn=turns,
            max_turns=max_turns,
            elapsed=elapsed,
            tool_calls=len(result.tool_calls),
            input_tokens=provider.session.input_tokens,
        )

        if not result.committed:
            conversation.add_text(ASSISTANT, result.text)
        if result.text:
            answer = result.text
            _emit(
                events,
                "assistant_text",
                text=result.text,
                final=not result.tool_calls,
            )

        if not result.tool_calls:
            return LoopResult(OUTCOME_DONE, result.text, turns)

        for call in result.tool_calls:
            if cancel.is_canceled:
                break
            _emit(events, "tool_call", id=call.id, name=call.name, arguments=call.arguments)
            t0 = time.monotonic()
            call_result = _execute_tool(
                registry, call, base_dir=base_dir, cancel=cancel, subagent=subagent
            )
            provider.add_tool_result(call_result.call_id, call_result.output)
            _emit(
                events,
                "tool_result",
                id=call.id,
                name=call.name,
                text=call_result.output,
                error=call_result.failed,
                elapsed=time.monotonic() - t0,
            )

        if cancel.is_canceled:
            return LoopResult(OUTCOME_CANCELED, answer, turns)

    logger.warning("Max turns (%d) reached without a final answer", max_turns)
    return LoopResult(OUTCOME_EXHAUSTED, answer, turns)


# -- Rendering ---------------------------------------------------------------


def _first_line(text: str, limit: int = 120) -> str:
    line = text.strip().splitlines()[0] if text.strip() else ""
    return line if len(line) <= limit else line[: limit - 3] + "..."


def _pretty_args(arguments: str) -> str:
    try:
        pretty = json.dumps(json.loads(arguments), indent=2)
    except (json.JSONDecodeError, TypeError):
        pretty = arguments
    if len(pretty) > MAX_ARG_LOG:
        pretty = pretty[:MAX_ARG_LOG] + "..."
    return pretty


def render_event(event: LoopEvent) -> None:
    d = event.data
    if event.kind == "inference":
        fmt.turn_header(d["turn"], d["max_turns"], d["input_tokens"])
        fmt.llm_timing(d["elapsed"], d["tool_calls"])
    elif event.kind == "assistant_text":
        if not d["final"]:
            fmt.assistant_text(d["text"])
    elif event.kind == "tool_call":
        fmt.tool_call(d["name"], _pretty_args(d["arguments"]))
    elif event.kind == "tool_result":
        if d["error"]:
            fmt.tool_error(d["name"], _first_line(d["text"]))
        else:
            fmt.tool_result(d["name"], d["elapsed"], _first_line(d["text"]))
    elif event.kind == "summarized":
        fmt.summarized(d["turns"])


def run_turn(session, question: str, *, verbose: bool = True):
    """Run ``session.ask`` on a worker thread while rendering its events.

    Ctrl-C cancels the running loop instead of killing the process. Returns
    the session Result, or raises whatever the worker raised.
    """
    events: queue.Queue = queue.Queue()
    outcome: dict = {}

    def _worker():
        try:
            outcome["result"] = session.ask(question, events=events)
        except BaseException as e:  # re-raised on the UI thread
            outcome["error"] = e
        finally:
            events.put(None)

    worker = threading.Thread(target=_worker, name="tandem-agent", daemon=True)
    worker.start()

    canceling = False
    while True:
        try:
            event = events.get(timeout=_UI_POLL_INTERVAL)
            if event is None:
                break
            if verbose:
                render_event(event)
        except queue.Empty:
            continue
        except KeyboardInterrupt:
            if not canceling:
                canceling = True
                session.cancel()
                fmt.warning("interrupted, canceling the current run...")

    worker.join()
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]


def _print_usage(session) -> None:
    s = session.provider.session
    fmt.usage_summary(
        s.total_input_tokens, s.total_output_tokens, session.provider.calculate_price()
    )


# -- REPL --------------------------------------------------------------------


def _repl_help(commands: dict) -> None:
    """Print available REPL commands."""
    text = (
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset conversation to initial state\n"
        "  /compact           Summarize the conversation now\n"
        "  /cost              Show token usage and cost so far\n"
        "  /cmd:<name> [args] Run a prompt template from ~/.config/tandem/cmds\n"
        "  /exit, /quit       Exit the REPL"
    )
    if commands:
        text += "\n\nCustom commands:\n" + "\n".join(
            f"  {COMMAND_PREFIX}{name}" for name in sorted(commands)
        )
    fmt.info(text)


def _repl_custom(
    session, commands: dict, line: str, *, verbose: bool, no_cost: bool
) -> None:
    """Expand a /cmd:<name> template and send it to the model."""
    name, args = parse_invocation(line)
    command = commands.get(name)
    if command is None:
        fmt.error(f"unknown command {COMMAND_PREFIX}{name} (see /help)")
        return
    try:
        prompt = command.render(args)
    except (OSError, UnicodeDecodeError) as e:
        fmt.error(f"failed to load {command.path}: {e}")
        return
    if not prompt.strip():
        fmt.warning(f"{COMMAND_PREFIX}{name} expands to an empty prompt, skipping")
        return
    _repl_ask(session, prompt, verbose=verbose, no_cost=no_cost)


def _repl_compact(session) -> None:
    before = estimate_tokens(session.conversation)
    try:
        with fmt.llm_spinner("Summarizing conversation"):
            changed = session.compact()
    except KeyboardInterrupt:
        session.cancel()
        fmt.warning("compaction interrupted")
        return
    if not changed:
        fmt.info("nothing to compact")
        return
    after = estimate_tokens(session.conversation)
    fmt.info(
        f"compacted: {fmt.format_token_count(before)} -> "
        f"{fmt.format_token_count(after)} tokens"
    )


def _repl_cost(session) -> None:
    fmt.context_stats("Conversation", estimate_tokens(session.conversation))
    _print_usage(session)


def _repl_ask(session, question: str, *, verbose: bool, no_cost: bool) -> None:
    try:
        result = run_turn(session, question, verbose=verbose)
    except AgentError as e:
        fmt.error(str(e))
        return
    if result.outcome == OUTCOME_CANCELED:
        fmt.warning("canceled")
        return
    if result.answer:
        print(result.answer)
    if result.outcome == OUTCOME_EXHAUSTED:
        fmt.warning(f"max turns reached ({result.turns}) without a final answer")
    if verbose and not no_cost:
        _print_usage(session)


def repl_loop(
    session,
    *,
    initial_question: str | None = None,
    verbose: bool = True,
    no_cost: bool = False,
) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(session.base_dir) / ".tandem" / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "tandem> ")])

    commands = discover_commands(verbose=verbose)

    if verbose:
        fmt.repl_banner()

    if initial_question:
        _repl_ask(session, initial_question, verbose=verbose, no_cost=no_cost)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # Only known commands are intercepted; unknown /foo goes to the model
        cmd = line.split(None, 1)[0].lower()
        if cmd in ("/exit", "/quit"):
            break
        if cmd == "/help":
            _repl_help(commands)
        elif cmd == "/clear":
            dropped = session.reset()
            fmt.info(f"context cleared ({dropped} turns removed)")
        elif cmd == "/compact":
            _repl_compact(session)
        elif cmd == "/cost":
            _repl_cost(session)
        elif cmd.startswith(COMMAND_PREFIX):
            _repl_custom(session, commands, line, verbose=verbose, no_cost=no_cost)
        else:
            _repl_ask(session, line, verbose=verbose, no_cost=no_cost)


# -- CLI ---------------------------------------------------------------------


def _csv_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="tandem",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A command-line AI assistant for OpenAI and Anthropic models, with local tools.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project (tandem.toml) template.",
    )
    parser.add_argument(
        "--provider",
        choices=PROVIDER_NAMES,
        default=_UNSET,
        help="LLM provider (default: anthropic if ANTHROPIC_API_KEY is set, else openai).",
    )
    parser.add_argument("--model", default=_UNSET, help="Model identifier.")
    parser.add_argument(
        "--api-key",
        default=_UNSET,
        help="API key for the provider (overrides config and env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Override the provider's API base URL.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per call (default: 20000).",
    )
    parser.add_argument(
        "--context-window",
        type=int,
        default=_UNSET,
        help="Context window size used for summarization (default: per provider).",
    )
    parser.add_argument(
        "--reasoning-effort",
        choices=["low", "medium", "high"],
        default=_UNSET,
        help="Reasoning effort for OpenAI reasoning models (default: medium).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum inference rounds per question (default: 100).",
    )
    parser.add_argument(
        "--system-prompt",
        default=_UNSET,
        help="Replace the built-in system prompt.",
    )
    parser.add_argument(
        "--no-system-prompt",
        action="store_true",
        default=_UNSET,
        help="Send no system prompt at all.",
    )
    parser.add_argument(
        "--system-files",
        type=_csv_list,
        default=_UNSET,
        help="Comma-separated rule files to load from the base directory (default: AI.md,CLAUDE.md).",
    )
    parser.add_argument(
        "--no-rules",
        action="store_true",
        default=_UNSET,
        help="Do not load rule files.",
    )
    parser.add_argument(
        "--tools",
        dest="enabled_tools",
        type=_csv_list,
        default=_UNSET,
        help="Comma-separated list of tools to enable (default: all).",
    )
    parser.add_argument(
        "--base-dir",
        default=_UNSET,
        help="Working directory for tools, rule files and project config (default: .).",
    )
    parser.add_argument(
        "--quiet",
        "-q",
        action="store_true",
        default=_UNSET,
        help="Only print the final answer.",
    )
    parser.add_argument(
        "--no-cost",
        action="store_true",
        default=_UNSET,
        help="Do not print token usage and cost.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=_UNSET,
        help="Show debug logs on stderr.",
    )
    parser.add_argument(
        "--log-file",
        default=_UNSET,
        help="Append debug logs to this file.",
    )
    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force colored output.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable colored output.",
    )
    return parser


def _session_kwargs(args) -> dict:
    return dict(
        base_dir=args.base_dir,
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_turns=args.max_turns,
        max_output_tokens=args.max_output_tokens,
        context_window=args.context_window,
        temperature=args.temperature,
        reasoning_effort=args.reasoning_effort,
        system_prompt=args.system_prompt,
        no_system_prompt=args.no_system_prompt,
        system_files=args.system_files,
        no_rules=args.no_rules,
        enabled_tools=args.enabled_tools,
    )


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("tandem")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(0)

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")

    base_dir = "." if args.base_dir is _UNSET else args.base_dir
    try:
        config = load_config(Path(base_dir))
        apply_config_to_args(args, config)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)

    if args.system_prompt and args.no_system_prompt:
        parser.error("--system-prompt and --no-system-prompt are mutually exclusive")

    fmt.init(color=args.color, no_color=args.no_color)
    fmt.setup_logging(debug=args.debug, log_file=args.log_file)
    args.verbose = not args.quiet

    try:
        code = _run_main(args)
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(EXIT_ERROR)
    sys.exit(code)


def _run_main(args) -> int:
    from .session import Session

    session = Session(**_session_kwargs(args))
    if args.verbose:
        fmt.model_info(f"Using {args.provider} model {session.provider.model}")
        for name in session.rules_loaded:
            fmt.info(f"Loaded {name}")

    if args.repl:
        repl_loop(
            session,
            initial_question=args.question,
            verbose=args.verbose,
            no_cost=args.no_cost,
        )
        return 0

    result = run_turn(session, args.question, verbose=args.verbose)
    if args.verbose:
        fmt.completion(result.turns, result.outcome)

    if result.outcome == OUTCOME_CANCELED:
        fmt.warning("canceled by user")
        return EXIT_CANCELED

    if result.answer:
        print(result.answer)
    if args.verbose and not args.no_cost:
        _print_usage(session)

    if result.outcome == OUTCOME_EXHAUSTED:
        fmt.warning(f"max turns reached ({result.turns}) without a final answer")
        return EXIT_EXHAUSTED
    return 0


if __name__ == "__main__":
    main()
