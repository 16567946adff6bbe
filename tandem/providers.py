"""Provider adapters: one Conversation, two remote wire protocols.

Each adapter serializes the Conversation into its API's native message
schema, performs the call, parses the reply into an InferenceResult and
keeps a ProviderSession's token counters up to date.

The OpenAI-compatible adapter goes through LiteLLM; the Anthropic adapter
talks to the Messages API through the official SDK so that prompt-cache
markers can be attached to the system prompt and the tool list.
"""

import json
import logging
import re
import time
import uuid
from dataclasses import dataclass

from . import context, fmt
from .cancel import CancelToken, run_cancellable
from .conversation import (
    ASSISTANT,
    SYSTEM,
    TOOL,
    USER,
    Conversation,
    InferenceResult,
    Text,
    ToolCallRequest,
    ToolResult,
    ToolUse,
    Turn,
)
from .errors import (
    Canceled,
    ConfigError,
    MalformedResponseError,
    ProviderError,
    RateLimitedError,
    SummarizationError,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_TOKENS = 20000
OPENAI_BASE_URL = "https://api.openai.com/v1"

_RATE_LIMIT_RE = re.compile(r"rate limit|too many requests", re.IGNORECASE)


@dataclass
class ProviderSession:
    """Token accounting for one provider.

    ``input_tokens``/``output_tokens`` track the current context window and
    are zeroed at every summarization. The ``total_*`` and
    ``cached_input_tokens`` counters cover the whole process lifetime and
    drive cost reporting.
    """

    model: str
    context_window: int
    price_per_million_in: float
    price_per_million_out: float
    price_per_million_cached_in: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    cached_input_tokens: int = 0

    def record_usage(
        self,
        input_tokens: int,
        output_tokens: int,
        cached_tokens: int = 0,
        *,
        window: bool = True,
    ) -> None:
        if window:
            self.input_tokens += input_tokens
            self.output_tokens += output_tokens
        self.total_input_tokens += input_tokens
        self.total_output_tokens += output_tokens
        self.cached_input_tokens += cached_tokens

    def reset_window(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0


def _usage_int(obj, name: str) -> int:
    value = getattr(obj, name, None) if obj is not None else None
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


def _new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def _call_id(raw, seen: set) -> str:
    """The provider's call ID, or a fresh one when missing or repeated.

    Results are matched to calls by ID, so IDs within one response must
    be unique.
    """
    if raw and raw in seen:
        logger.debug("Duplicate tool call id %r, assigning a fresh one", raw)
        raw = None
    call_id = raw or _new_call_id()
    seen.add(call_id)
    return call_id


class Provider:
    """Common adapter behaviour: retry on rate limit, summarization, commit."""

    name = ""
    default_model = ""
    context_window = 0
    price_per_million_in = 0.0
    price_per_million_out = 0.0
    price_per_million_cached_in = 0.0

    def __init__(
        self,
        *,
        api_key: str,
        model: str | None = None,
        base_url: str | None = None,
        conversation: Conversation | None = None,
        registry=None,
        cancel: CancelToken | None = None,
        max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
        context_window: int | None = None,
        temperature: float | None = None,
        reasoning_effort: str | None = None,
        summary_prompt: str | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.conversation = conversation if conversation is not None else Conversation()
        self.cancel = cancel
        self.max_output_tokens = max_output_tokens
        self.temperature = temperature
        self.reasoning_effort = reasoning_effort
        self.summary_prompt = summary_prompt
        self.session = ProviderSession(
            model=model or self.default_model,
            context_window=context_window or self.context_window,
            price_per_million_in=self.price_per_million_in,
            price_per_million_out=self.price_per_million_out,
            price_per_million_cached_in=self.price_per_million_cached_in,
        )
        # Declarations are built once and reused for every call.
        self.tools = self.declare_tools(registry) if registry is not None else []
        self.summary_count = 0

    @property
    def model(self) -> str:
        return self.session.model

    # -- Conversation helpers ------------------------------------------------

    def add_message(self, content, role: str = USER) -> None:
        """Append a turn. Empty content is ignored."""
        if not content:
            return
        if isinstance(content, str):
            self.conversation.add_text(role, content)
        else:
            self.conversation.append(Turn(role, list(content)))

    def add_tool_result(self, tool_use_id: str, text: str) -> None:
        self.conversation.add_tool_result(tool_use_id, text)

    def clear(self) -> int:
        """Forget the conversation, keeping the system turn."""
        dropped = self.conversation.clear()
        self.session.reset_window()
        return dropped

    def calculate_price(self) -> float:
        s = self.session
        uncached = max(s.total_input_tokens - s.cached_input_tokens, 0)
        return (
            uncached * s.price_per_million_in
            + s.cached_input_tokens * s.price_per_million_cached_in
            + s.total_output_tokens * s.price_per_million_out
        ) / 1_000_000

    # -- Inference -----------------------------------------------------------

    def infer(self, prompt: str = "") -> InferenceResult:
        """Run one inference round on the current conversation.

        A non-empty ``prompt`` is appended as a user turn first. When the
        window is nearly full the conversation is summarized beforehand.
        Raises ProviderError subclasses on failure and Canceled if the
        cancel token fires while the call is in flight.
        """
        if prompt:
            self.add_message(prompt, USER)
        if context.should_summarize(self.session):
            logger.info(
                "Context usage %d/%d tokens, summarizing",
                self.session.input_tokens,
                self.session.context_window,
            )
            self.summarize_best_effort()
        return self._infer_with_retry(retrying=False)

    def _infer_with_retry(self, retrying: bool) -> InferenceResult:
        # The wire payload is rebuilt on every attempt so a retry sees the
        # summarized conversation.
        try:
            response = self._call(self.to_wire(self.conversation.turns), self.tools)
        except RateLimitedError as e:
            if retrying:
                logger.warning("Rate limited again after retry: %s", e)
                raise
            logger.warning("Rate limited, summarizing and retrying once: %s", e)
            self.summarize_best_effort()
            return self._infer_with_retry(retrying=True)

        result, usage = self.parse_response(response)
        self.session.record_usage(*usage)
        if result.text or result.tool_calls:
            self.conversation.add_assistant(result.text, result.tool_calls)
            result.committed = True
        return result

    def summarize_best_effort(self) -> bool:
        """Compact the conversation; failures are logged, never raised.

        Canceled still propagates. Returns True if the conversation changed.
        """
        try:
            changed = context.summarize(self)
        except (SummarizationError, ProviderError) as e:
            logger.debug("Summarization failed: %s", e)
            fmt.warning(f"summarization failed, continuing uncompacted: {e}")
            return False
        if changed:
            self.summary_count += 1
        return changed

    def complete(self, turns: list[Turn], *, system: str, temperature: float) -> str:
        """One tool-free completion over ``turns`` with a replacement system prompt.

        Usage counts toward lifetime totals only.
        """
        wire_turns = [Turn(SYSTEM, system)] + [t for t in turns if t.role != SYSTEM]
        response = self._call(
            self.to_wire(wire_turns),
            self.tools,
            temperature=temperature,
            allow_tools=False,
        )
        result, usage = self.parse_response(response)
        self.session.record_usage(*usage, window=False)
        return result.text

    def _call(self, payload: dict, tools: list, **kwargs):
        started = time.monotonic()
        try:
            response = run_cancellable(
                self.cancel, self._request, payload, tools, **kwargs
            )
        except (Canceled, ProviderError):
            raise
        except Exception as e:
            raise self._classify_error(e) from e
        logger.debug(
            "%s call to %s took %.1fs",
            self.name,
            self.model,
            time.monotonic() - started,
        )
        return response

    def _classify_error(self, e: Exception) -> ProviderError:
        status = getattr(e, "status_code", None)
        message = str(e)
        if (
            isinstance(e, self._rate_limit_types())
            or status == 429
            or _RATE_LIMIT_RE.search(message)
        ):
            return RateLimitedError(message, status_code=status)
        logger.debug("%s call failed: %s", self.name, message)
        return TransportError(message)

    # -- Provider-specific ---------------------------------------------------

    def _rate_limit_types(self) -> tuple:
        return ()

    def declare_tools(self, registry) -> list[dict]:
        raise NotImplementedError

    def to_wire(self, turns: list[Turn]) -> dict:
        raise NotImplementedError

    def from_wire(self, payload: dict) -> list[Turn]:
        raise NotImplementedError

    def _request(self, payload: dict, tools: list, **kwargs):
        raise NotImplementedError

    def parse_response(self, response) -> tuple[InferenceResult, tuple[int, int, int]]:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# OpenAI-compatible (Chat Completions through LiteLLM)
# ---------------------------------------------------------------------------


def _text_parts(blocks: list) -> list[dict]:
    return [{"type": "text", "text": b.text} for b in blocks if isinstance(b, Text)]


class OpenAIProvider(Provider):
    name = "openai"
    default_model = "o4-mini"
    context_window = 200_000
    price_per_million_in = 2.0
    price_per_million_cached_in = 0.5
    price_per_million_out = 8.0

    @property
    def is_reasoning_model(self) -> bool:
        return self.model.startswith("o")

    def _rate_limit_types(self) -> tuple:
        import litellm

        return (litellm.RateLimitError,)

    def declare_tools(self, registry) -> list[dict]:
        return registry.openai_declarations()

    def to_wire(self, turns: list[Turn]) -> dict:
        messages: list[dict] = []
        for turn in turns:
            if turn.is_plain:
                role = USER if turn.role == TOOL else turn.role
                messages.append({"role": role, "content": turn.content})
                continue

            if turn.role == ASSISTANT:
                msg: dict = {"role": ASSISTANT}
                uses = turn.tool_uses
                if uses:
                    msg["content"] = turn.text or None
                    msg["tool_calls"] = [
                        {
                            "id": u.id,
                            "type": "function",
                            "function": {"name": u.name, "arguments": u.arguments},
                        }
                        for u in uses
                    ]
                else:
                    msg["content"] = _text_parts(turn.content)
                messages.append(msg)
                continue

            # user/tool/system turns: one "tool" message per result, then text
            for result in turn.tool_results:
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": result.tool_use_id,
                        "content": result.text or "No result",
                    }
                )
            parts = _text_parts(turn.content)
            if parts or not turn.tool_results:
                role = USER if turn.role == TOOL else turn.role
                if role == SYSTEM:
                    messages.append({"role": role, "content": turn.text})
                else:
                    messages.append({"role": role, "content": parts})
        return {"messages": messages}

    def from_wire(self, payload: dict) -> list[Turn]:
        turns: list[Turn] = []
        for msg in payload.get("messages", []):
            role = msg.get("role")
            content = msg.get("content")
            if role == "tool":
                result = ToolResult(msg.get("tool_call_id", ""), content or "")
                if turns and turns[-1].carries_results:
                    turns[-1].content.append(result)
                else:
                    turns.append(Turn(USER, [result]))
                continue

            if isinstance(content, list):
                blocks: list = [
                    Text(p.get("text", "")) for p in content if p.get("type") == "text"
                ]
            else:
                blocks = None

            tool_calls = msg.get("tool_calls") or []
            if role == ASSISTANT and tool_calls:
                text = content if isinstance(content, str) else ""
                if blocks is not None:
                    text = "".join(b.text for b in blocks)
                new_blocks: list = [Text(text)]
                for tc in tool_calls:
                    fn = tc.get("function", {})
                    new_blocks.append(
                        ToolUse(
                            tc.get("id", ""),
                            fn.get("name", ""),
                            fn.get("arguments") or "{}",
                        )
                    )
                turns.append(Turn(ASSISTANT, new_blocks))
            elif blocks is not None:
                turns.append(Turn(role, blocks))
            else:
                turns.append(Turn(role, content or ""))
        return turns

    def _request(
        self, payload: dict, tools: list, *, temperature=None, allow_tools=True
    ):
        import litellm

        litellm.suppress_debug_info = True

        kwargs = dict(
            model=f"openai/{self.model}",
            api_base=self.base_url or OPENAI_BASE_URL,
            api_key=self.api_key,
            messages=payload["messages"],
            max_tokens=self.max_output_tokens,
        )
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto" if allow_tools else "none"
        if self.is_reasoning_model:
            # Reasoning models reject sampling parameters.
            if self.reasoning_effort:
                kwargs["reasoning_effort"] = self.reasoning_effort
        else:
            temp = temperature if temperature is not None else self.temperature
            if temp is not None:
                kwargs["temperature"] = temp
        return litellm.completion(**kwargs)

    def parse_response(self, response):
        choices = getattr(response, "choices", None)
        if not choices:
            raise MalformedResponseError("no choices in response")
        message = getattr(choices[0], "message", None)
        if message is None:
            raise MalformedResponseError("response choice has no message")

        calls = []
        seen: set[str] = set()
        for tc in getattr(message, "tool_calls", None) or []:
            fn = getattr(tc, "function", None)
            name = getattr(fn, "name", None)
            if not name:
                raise MalformedResponseError("tool call without a function name")
            calls.append(
                ToolCallRequest(
                    id=_call_id(getattr(tc, "id", None), seen),
                    name=name,
                    arguments=getattr(fn, "arguments", None) or "{}",
                )
            )

        usage = getattr(response, "usage", None)
        details = getattr(usage, "prompt_tokens_details", None)
        counts = (
            _usage_int(usage, "prompt_tokens"),
            _usage_int(usage, "completion_tokens"),
            _usage_int(details, "cached_tokens"),
        )
        text = getattr(message, "content", None) or ""
        return InferenceResult(text=text, tool_calls=calls), counts


# ---------------------------------------------------------------------------
# Anthropic Messages API
# ---------------------------------------------------------------------------

_EPHEMERAL = {"type": "ephemeral"}


def _decode_input(arguments: str) -> dict:
    try:
        value = json.loads(arguments or "{}")
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


class AnthropicProvider(Provider):
    name = "anthropic"
    default_model = "claude-3-7-sonnet-latest"
    context_window = 80_000
    price_per_million_in = 3.0
    price_per_million_out = 15.0

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self._client = None

    def _get_client(self):
        """Lazy initialization of the Anthropic client."""
        if self._client is None:
            import anthropic

            client_kwargs = {"api_key": self.api_key}
            if self.base_url:
                client_kwargs["base_url"] = self.base_url
            self._client = anthropic.Anthropic(**client_kwargs)
        return self._client

    def _rate_limit_types(self) -> tuple:
        import anthropic

        return (anthropic.RateLimitError,)

    def declare_tools(self, registry) -> list[dict]:
        tools = registry.anthropic_declarations()
        if tools:
            tools[-1] = {**tools[-1], "cache_control": dict(_EPHEMERAL)}
        return tools

    def to_wire(self, turns: list[Turn]) -> dict:
        system = None
        messages: list[dict] = []
        for turn in turns:
            if turn.role == SYSTEM:
                system = [
                    {
                        "type": "text",
                        "text": turn.text,
                        "cache_control": dict(_EPHEMERAL),
                    }
                ]
                continue
            role = USER if turn.role == TOOL else turn.role
            if turn.is_plain:
                messages.append({"role": role, "content": turn.content})
                continue

            blocks: list[dict] = []
            for block in turn.content:
                if isinstance(block, Text):
                    if block.text:
                        blocks.append({"type": "text", "text": block.text})
                elif isinstance(block, ToolUse):
                    blocks.append(
                        {
                            "type": "tool_use",
                            "id": block.id,
                            "name": block.name,
                            "input": _decode_input(block.arguments),
                        }
                    )
                elif isinstance(block, ToolResult):
                    blocks.append(
                        {
                            "type": "tool_result",
                            "tool_use_id": block.tool_use_id,
                            "content": block.text,
                        }
                    )
            messages.append({"role": role, "content": blocks or ""})

        payload: dict = {"messages": messages}
        if system is not None:
            payload["system"] = system
        return payload

    def from_wire(self, payload: dict) -> list[Turn]:
        turns: list[Turn] = []
        system = payload.get("system")
        if system:
            if isinstance(system, str):
                turns.append(Turn(SYSTEM, system))
            else:
                turns.append(Turn(SYSTEM, "".join(b.get("text", "") for b in system)))
        for msg in payload.get("messages", []):
            content = msg.get("content")
            if isinstance(content, str):
                turns.append(Turn(msg["role"], content))
                continue
            blocks: list = []
            for b in content:
                kind = b.get("type")
                if kind == "text":
                    blocks.append(Text(b.get("text", "")))
                elif kind == "tool_use":
                    blocks.append(
                        ToolUse(
                            b.get("id", ""),
                            b.get("name", ""),
                            json.dumps(b.get("input", {})),
                        )
                    )
                elif kind == "tool_result":
                    result = b.get("content", "")
                    if isinstance(result, list):
                        result = "".join(p.get("text", "") for p in result)
                    blocks.append(ToolResult(b.get("tool_use_id", ""), result))
            turns.append(Turn(msg["role"], blocks))
        return turns

    def _request(
        self, payload: dict, tools: list, *, temperature=None, allow_tools=True
    ):
        kwargs = dict(
            model=self.model,
            messages=payload["messages"],
            max_tokens=self.max_output_tokens,
        )
        if "system" in payload:
            kwargs["system"] = payload["system"]
        if tools:
            kwargs["tools"] = tools
            if not allow_tools:
                kwargs["tool_choice"] = {"type": "none"}
        temp = temperature if temperature is not None else self.temperature
        if temp is not None:
            kwargs["temperature"] = temp
        return self._get_client().messages.create(**kwargs)

    def parse_response(self, response):
        content = getattr(response, "content", None)
        if not isinstance(content, list):
            raise MalformedResponseError("response carries no content blocks")

        texts: list[str] = []
        calls: list[ToolCallRequest] = []
        seen: set[str] = set()
        for block in content:
            kind = getattr(block, "type", None)
            if kind == "text":
                texts.append(getattr(block, "text", "") or "")
            elif kind == "tool_use":
                calls.append(
                    ToolCallRequest(
                        id=_call_id(getattr(block, "id", None), seen),
                        name=block.name,
                        arguments=json.dumps(getattr(block, "input", None) or {}),
                    )
                )

        usage = getattr(response, "usage", None)
        counts = (
            _usage_int(usage, "input_tokens"),
            _usage_int(usage, "output_tokens"),
            0,
        )
        return InferenceResult(text="".join(texts), tool_calls=calls), counts


PROVIDERS: dict[str, type[Provider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
}


def create_provider(name: str, **kwargs) -> Provider:
    """Instantiate the adapter registered under ``name``."""
    cls = PROVIDERS.get(name)
    if cls is None:
        raise ConfigError(
            f"unknown provider {name!r} (expected one of: {', '.join(PROVIDERS)})"
        )
    return cls(**kwargs)
