"""Conversation store: ordered, role-tagged turns built from typed content blocks.

A turn's content is either a plain string or an ordered list of blocks
(``Text``, ``ToolUse``, ``ToolResult``). The store is append-only apart from
``replace_body()``, which summarization uses to swap the whole history at once.
"""

import functools
import json
from dataclasses import dataclass, field
from typing import Union

import tiktoken

SYSTEM = "system"
USER = "user"
ASSISTANT = "assistant"
TOOL = "tool"
ROLES = (SYSTEM, USER, ASSISTANT, TOOL)


@dataclass(frozen=True)
class Text:
    text: str


@dataclass(frozen=True)
class ToolUse:
    id: str
    name: str
    # Raw JSON text of the arguments, as produced by the model.
    arguments: str = "{}"


@dataclass(frozen=True)
class ToolResult:
    tool_use_id: str
    text: str


ContentBlock = Union[Text, ToolUse, ToolResult]
Content = Union[str, list[ContentBlock]]


@dataclass
class Turn:
    role: str
    content: Content

    def __post_init__(self):
        if self.role not in ROLES:
            raise ValueError(f"unknown role {self.role!r}")
        if not isinstance(self.content, (str, list)):
            raise TypeError(
                f"turn content must be a string or a list of blocks, "
                f"got {type(self.content).__name__}"
            )

    @property
    def is_plain(self) -> bool:
        return isinstance(self.content, str)

    @property
    def blocks(self) -> list[ContentBlock]:
        if self.is_plain:
            return [Text(self.content)]
        return list(self.content)

    @property
    def text(self) -> str:
        """Concatenated text of all Text blocks."""
        if self.is_plain:
            return self.content
        return "".join(b.text for b in self.content if isinstance(b, Text))

    @property
    def tool_uses(self) -> list[ToolUse]:
        return [b for b in self.blocks if isinstance(b, ToolUse)]

    @property
    def tool_results(self) -> list[ToolResult]:
        return [b for b in self.blocks if isinstance(b, ToolResult)]

    @property
    def carries_results(self) -> bool:
        """True for a user/tool turn made only of ToolResult blocks."""
        return (
            self.role in (USER, TOOL)
            and not self.is_plain
            and bool(self.content)
            and all(isinstance(b, ToolResult) for b in self.content)
        )


@dataclass(frozen=True)
class ToolCallRequest:
    id: str
    name: str
    arguments: str = "{}"


@dataclass(frozen=True)
class ToolCallResult:
    call_id: str
    output: str
    failed: bool = False


@dataclass
class InferenceResult:
    """Provider-independent view of one model response."""

    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    # Set once the provider has written the matching assistant turn.
    committed: bool = False


class Conversation:
    """Ordered sequence of turns owned by exactly one agent loop."""

    def __init__(self, turns: list[Turn] | None = None):
        self._turns: list[Turn] = list(turns or [])

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self):
        return iter(list(self._turns))

    def __getitem__(self, index):
        return self._turns[index]

    def __repr__(self) -> str:
        return f"Conversation({self._turns!r})"

    @property
    def turns(self) -> list[Turn]:
        return list(self._turns)

    @property
    def system_turn(self) -> Turn | None:
        if self._turns and self._turns[0].role == SYSTEM:
            return self._turns[0]
        return None

    @property
    def body(self) -> list[Turn]:
        """All turns except the leading system turn."""
        if self.system_turn is not None:
            return self._turns[1:]
        return list(self._turns)

    def set_system(self, text: str) -> None:
        turn = Turn(SYSTEM, text)
        if self.system_turn is not None:
            self._turns[0] = turn
        else:
            self._turns.insert(0, turn)

    def append(self, turn: Turn) -> Turn:
        if turn.role == SYSTEM:
            raise ValueError("the system turn can only be set with set_system()")
        self._turns.append(turn)
        return turn

    def add_text(self, role: str, text: str) -> Turn | None:
        """Append a plain-text turn. Empty text is ignored."""
        if not text:
            return None
        return self.append(Turn(role, text))

    def add_assistant(
        self, text: str, tool_calls: list[ToolCallRequest] | None = None
    ) -> Turn:
        """Append an assistant turn, as blocks when it carries tool calls."""
        if not tool_calls:
            return self.append(Turn(ASSISTANT, text))
        blocks: list = [Text(text)]
        blocks.extend(ToolUse(tc.id, tc.name, tc.arguments) for tc in tool_calls)
        return self.append(Turn(ASSISTANT, blocks))

    def _last_assistant_index(self) -> int | None:
        for i in range(len(self._turns) - 1, -1, -1):
            if self._turns[i].role == ASSISTANT:
                return i
        return None

    def _answered_ids(self, start: int) -> set[str]:
        answered = set()
        for turn in self._turns[start:]:
            answered.update(r.tool_use_id for r in turn.tool_results)
        return answered

    def pending_tool_uses(self) -> list[ToolUse]:
        """Tool uses of the last assistant turn that have no result yet."""
        idx = self._last_assistant_index()
        if idx is None:
            return []
        answered = self._answered_ids(idx + 1)
        return [u for u in self._turns[idx].tool_uses if u.id not in answered]

    def add_tool_result(self, tool_use_id: str, text: str) -> Turn:
        """Record the result of a tool call issued by the last assistant turn.

        Consecutive results are grouped into one user turn so a single
        assistant turn is always answered by a single result-carrying turn.
        """
        idx = self._last_assistant_index()
        if idx is None:
            raise ValueError(f"no assistant turn issued tool call {tool_use_id!r}")
        for turn in self._turns[idx + 1 :]:
            if not turn.carries_results:
                raise ValueError(
                    f"tool result {tool_use_id!r} does not follow the assistant turn"
                )
        issued = {u.id for u in self._turns[idx].tool_uses}
        if tool_use_id not in issued:
            raise ValueError(
                f"tool result references unknown tool call {tool_use_id!r}"
            )
        if tool_use_id in self._answered_ids(idx + 1):
            raise ValueError(f"tool call {tool_use_id!r} already has a result")

        result = ToolResult(tool_use_id, text)
        last = self._turns[-1]
        if last.carries_results:
            last.content.append(result)
            return last
        return self.append(Turn(USER, [result]))

    def preserved_tail(self, count: int = 2) -> list[Turn]:
        """The last ``count`` body turns, widened to keep tool pairs intact.

        If the tail opens with a result-carrying turn, the assistant turn
        that issued those calls is pulled in too.
        """
        body = self.body
        if count <= 0 or not body:
            return []
        start = max(0, len(body) - count)
        while start > 0 and body[start].carries_results:
            start -= 1
        return body[start:]

    def replace_body(self, summary: str, preserved: list[Turn]) -> None:
        """Swap history for [system] + summary + preserved, in one assignment."""
        new_turns: list[Turn] = []
        if self.system_turn is not None:
            new_turns.append(self.system_turn)
        new_turns.append(Turn(ASSISTANT, summary))
        new_turns.extend(preserved)
        self._turns = new_turns

    def clear(self) -> int:
        """Drop everything but the system turn. Returns the number removed."""
        keep = [self.system_turn] if self.system_turn is not None else []
        dropped = len(self._turns) - len(keep)
        self._turns = keep
        return dropped


@functools.lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(turns, tools: list | None = None) -> int:
    """Approximate prompt size of a list of turns using tiktoken."""

    enc = _encoder()
    total = 0
    count = 0
    for turn in turns:
        count += 1
        for block in turn.blocks:
            if isinstance(block, Text):
                total += len(enc.encode(block.text))
            elif isinstance(block, ToolUse):
                total += len(enc.encode(block.name + block.arguments))
            elif isinstance(block, ToolResult):
                total += len(enc.encode(block.text))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators) of roughly 4 tokens each
    total += 4 * count
    return total
