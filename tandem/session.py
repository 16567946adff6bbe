"""Public library API for tandem: Session class and Result dataclass."""

import logging
from dataclasses import dataclass

from .agent import (
    DEFAULT_RULE_FILES,
    OUTCOME_CANCELED,
    OUTCOME_EXHAUSTED,
    build_system_prompt,
    load_rule_files,
    run_agent_loop,
    seed_rule_files,
)
from .cancel import CancelToken
from .config import ENV_PREFIXES, apply_env
from .conversation import Conversation
from .errors import ConfigError
from .providers import DEFAULT_MAX_OUTPUT_TOKENS, create_provider
from .tools import DISPATCH_AGENT_TOOLS, build_registry

logger = logging.getLogger(__name__)


@dataclass
class Result:
    """Result of an ask call."""

    answer: str | None
    outcome: str
    turns: int

    @property
    def canceled(self) -> bool:
        return self.outcome == OUTCOME_CANCELED

    @property
    def exhausted(self) -> bool:
        return self.outcome == OUTCOME_EXHAUSTED


class Session:
    """Programmatic interface to the tandem agent loop.

    Owns the conversation, the provider adapter, the cancellation handle and
    the tool registry. Call .ask() repeatedly for a multi-turn conversation;
    .cancel() may be called from another thread while .ask() runs.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        api_key_shell: str | None = None,
        base_url: str | None = None,
        max_turns: int = 100,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        context_window: int | None = None,
        temperature: float | None = None,
        reasoning_effort: str | None = "medium",
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        system_files: list[str] | None = None,
        no_rules: bool = False,
        enabled_tools: list[str] | None = None,
        summary_prompt: str | None = None,
    ):
        resolved = {
            "provider": provider,
            "model": model,
            "api_key": api_key,
            "api_key_shell": api_key_shell,
            "base_url": base_url,
        }
        apply_env(resolved)
        if not resolved["api_key"]:
            prefix = ENV_PREFIXES[resolved["provider"]]
            raise ConfigError(
                f"no API key for {resolved['provider']}: set {prefix}_API_KEY, "
                f"--api-key or api_key_shell"
            )

        self.base_dir = base_dir
        self.max_turns = max_turns
        self.cancel_token = CancelToken()
        try:
            self.registry = build_registry(enabled_tools)
        except ValueError as e:
            raise ConfigError(str(e))

        self.system_prompt = None
        if not no_system_prompt:
            self.system_prompt = build_system_prompt(
                base_dir, resolved["model"], system_prompt
            )
        self.conversation = Conversation()
        if self.system_prompt is not None:
            self.conversation.set_system(self.system_prompt)
        self.rules_loaded: list[str] = []
        if not no_rules:
            files = DEFAULT_RULE_FILES if system_files is None else system_files
            rules = load_rule_files(base_dir, files)
            seed_rule_files(self.conversation, rules)
            self.rules_loaded = [name for name, _ in rules]

        self._provider_options = dict(
            api_key=resolved["api_key"],
            model=resolved["model"],
            base_url=resolved["base_url"],
            max_output_tokens=max_output_tokens,
            context_window=context_window,
            temperature=temperature,
            reasoning_effort=reasoning_effort,
            summary_prompt=summary_prompt,
        )
        self.provider_name = resolved["provider"]
        self.provider = create_provider(
            self.provider_name,
            conversation=self.conversation,
            registry=self.registry,
            cancel=self.cancel_token,
            **self._provider_options,
        )

    def ask(self, question: str, *, events=None) -> Result:
        """Send ``question`` and run the agent loop to completion."""
        self.cancel_token.reset()
        loop_result = run_agent_loop(
            self.provider,
            self.registry,
            question,
            cancel=self.cancel_token,
            events=events,
            max_turns=self.max_turns,
            base_dir=self.base_dir,
            subagent=self.dispatch,
        )
        return Result(
            answer=loop_result.answer,
            outcome=loop_result.outcome,
            turns=loop_result.turns,
        )

    def dispatch(self, prompt: str) -> str:
        """Answer ``prompt`` with a quiet sub-agent limited to read-only tools.

        The sub-agent gets a fresh conversation with the same system prompt
        and provider settings, shares this session's cancellation token, and
        renders nothing. Its token usage is added to this session's totals.
        """
        registry = build_registry(list(DISPATCH_AGENT_TOOLS))
        conversation = Conversation()
        if self.system_prompt is not None:
            conversation.set_system(self.system_prompt)
        sub = create_provider(
            self.provider_name,
            conversation=conversation,
            registry=registry,
            cancel=self.cancel_token,
            **self._provider_options,
        )
        logger.debug("Dispatching sub-agent: %s", prompt[:200])
        try:
            loop_result = run_agent_loop(
                sub,
                registry,
                prompt,
                cancel=self.cancel_token,
                max_turns=self.max_turns,
                base_dir=self.base_dir,
            )
        finally:
            usage = sub.session
            self.provider.session.record_usage(
                usage.total_input_tokens,
                usage.total_output_tokens,
                usage.cached_input_tokens,
                window=False,
            )

        if loop_result.outcome == OUTCOME_CANCELED:
            return "error: sub-agent canceled by user"
        if not loop_result.answer:
            return "error: sub-agent finished without an answer"
        if loop_result.outcome == OUTCOME_EXHAUSTED:
            return (
                f"{loop_result.answer}\n"
                f"[sub-agent stopped after {loop_result.turns} turns without finishing]"
            )
        return loop_result.answer

    def cancel(self) -> None:
        self.cancel_token.cancel()

    def compact(self) -> bool:
        """Summarize the conversation now. Returns True if it changed."""
        self.cancel_token.reset()
        return self.provider.summarize_best_effort()

    def reset(self) -> int:
        """Drop the conversation but keep the system prompt and usage totals."""
        return self.provider.clear()

    @property
    def cost(self) -> float:
        return self.provider.calculate_price()
