"""Tests for the agent loop state machine."""

import queue
import threading
import types

import pytest

from tandem.agent import (
    CANCELED_TOOL_RESULT,
    OUTCOME_CANCELED,
    OUTCOME_DONE,
    OUTCOME_EXHAUSTED,
    LoopEvent,
    run_agent_loop,
)
from tandem.cancel import CancelToken
from tandem.conversation import ASSISTANT, USER, Conversation, ToolResult, Turn
from tandem.errors import TransportError
from tandem.providers import AnthropicProvider
from tandem.tools import Tool, ToolRegistry


def _text(text):
    return types.SimpleNamespace(type="text", text=text)


def _tool_use(call_id, name, **args):
    return types.SimpleNamespace(type="tool_use", id=call_id, name=name, input=args)


def _response(*blocks):
    return types.SimpleNamespace(
        content=list(blocks),
        usage=types.SimpleNamespace(input_tokens=10, output_tokens=5),
    )


class ScriptedMessages:
    """Returns queued responses; callables are invoked to produce one."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if callable(item):
            item = item()
        if isinstance(item, Exception):
            raise item
        return item


def _provider(responses, cancel, conversation=None, registry=None):
    provider = AnthropicProvider(
        api_key="k",
        conversation=conversation,
        registry=registry,
        cancel=cancel,
        summary_prompt="Summarize.",
    )
    provider._client = types.SimpleNamespace(messages=ScriptedMessages(responses))
    return provider


def _registry(handler=None, seen=None):
    def bash(args, ctx):
        if seen is not None:
            seen.append(args)
        return handler(args, ctx) if handler else "ok"

    return ToolRegistry(
        [
            Tool(
                name="Bash",
                description="run",
                parameters={
                    "type": "object",
                    "properties": {"command": {"type": "string"}},
                    "required": ["command"],
                },
                handler=bash,
                primary_field="command",
            ),
            Tool(
                name="Edit",
                description="edit",
                parameters={"type": "object", "properties": {}},
                handler=lambda args, ctx: "edited",
            ),
        ],
        enabled=["Bash"],
    )


def _all_tool_uses_answered(conv):
    used = {u.id for t in conv for u in t.tool_uses}
    answered = {r.tool_use_id for t in conv for r in t.tool_results}
    return used <= answered


class TestCompletion:
    def test_plain_answer(self):
        cancel = CancelToken()
        provider = _provider([_response(_text("done"))], cancel)
        result = run_agent_loop(provider, _registry(), "hello", cancel=cancel)
        assert result.outcome == OUTCOME_DONE
        assert result.answer == "done"
        assert result.turns == 1
        assert provider.conversation.turns == [Turn(USER, "hello"), Turn(ASSISTANT, "done")]

    def test_tool_result_appended_before_next_inference(self):
        cancel = CancelToken()
        seen = []
        provider = _provider(
            [
                _response(_tool_use("t1", "Bash", command="ls")),
                _response(_text("all good")),
            ],
            cancel,
            registry=_registry(seen=seen),
        )
        result = run_agent_loop(provider, _registry(seen=seen), "go", cancel=cancel)
        assert result.outcome == OUTCOME_DONE
        assert result.answer == "all good"
        assert seen == [{"command": "ls"}]

        second_call = provider._client.messages.calls[1]
        assert second_call["messages"][-1] == {
            "role": "user",
            "content": [{"type": "tool_result", "tool_use_id": "t1", "content": "ok"}],
        }
        conv = provider.conversation
        assert conv[2].content == [ToolResult("t1", "ok")]
        assert _all_tool_uses_answered(conv)

    def test_multiple_calls_executed_in_order(self):
        cancel = CancelToken()
        seen = []
        provider = _provider(
            [
                _response(
                    _text("two things"),
                    _tool_use("t1", "Bash", command="first"),
                    _tool_use("t2", "Bash", command="second"),
                ),
                _response(_text("finished")),
            ],
            cancel,
        )
        run_agent_loop(provider, _registry(seen=seen), "go", cancel=cancel)
        assert [a["command"] for a in seen] == ["first", "second"]
        results = provider.conversation[2].tool_results
        assert [r.tool_use_id for r in results] == ["t1", "t2"]

    def test_repeated_call_ids_get_fresh_ids(self):
        cancel = CancelToken()
        seen = []
        provider = _provider(
            [
                _response(
                    _tool_use("t1", "Bash", command="first"),
                    _tool_use("t1", "Bash", command="second"),
                ),
                _response(_text("finished")),
            ],
            cancel,
        )
        result = run_agent_loop(provider, _registry(seen=seen), "go", cancel=cancel)
        assert result.outcome == OUTCOME_DONE
        assert [a["command"] for a in seen] == ["first", "second"]
        conv = provider.conversation
        ids = [u.id for u in conv[1].tool_uses]
        assert ids[0] == "t1"
        assert ids[1].startswith("call_")
        assert [r.tool_use_id for r in conv[2].tool_results] == ids
        assert _all_tool_uses_answered(conv)

    def test_empty_prompt_resumes(self):
        cancel = CancelToken()
        conv = Conversation()
        conv.add_text(USER, "earlier question")
        provider = _provider([_response(_text("answer"))], cancel, conversation=conv)
        run_agent_loop(provider, _registry(), "", cancel=cancel)
        assert [t.role for t in conv] == [USER, ASSISTANT]


class TestToolFailures:
    def test_unknown_tool_reported_as_text(self):
        cancel = CancelToken()
        provider = _provider(
            [_response(_tool_use("t1", "Teleport")), _response(_text("ok then"))],
            cancel,
        )
        result = run_agent_loop(provider, _registry(), "go", cancel=cancel)
        assert result.outcome == OUTCOME_DONE
        assert provider.conversation[2].content == [
            ToolResult("t1", "Tool Teleport is not implemented yet.")
        ]

    def test_disabled_tool_reported_as_text(self):
        cancel = CancelToken()
        provider = _provider(
            [_response(_tool_use("t1", "Edit")), _response(_text("ok"))], cancel
        )
        run_agent_loop(provider, _registry(), "go", cancel=cancel)
        assert provider.conversation[2].content[0].text == "Tool Edit is not enabled."

    def test_raising_tool_does_not_abort(self):
        def boom(args, ctx):
            raise RuntimeError("kaboom")

        cancel = CancelToken()
        provider = _provider(
            [_response(_tool_use("t1", "Bash", command="x")), _response(_text("recovered"))],
            cancel,
        )
        result = run_agent_loop(provider, _registry(handler=boom), "go", cancel=cancel)
        assert result.answer == "recovered"
        assert provider.conversation[2].content[0].text == "Error executing Bash: kaboom"

    def test_tool_result_events_flag_failures(self):
        def flaky(args, ctx):
            if args["command"] == "bad":
                raise RuntimeError("kaboom")
            return "fine"

        cancel = CancelToken()
        events = queue.Queue()
        provider = _provider(
            [
                _response(
                    _tool_use("t1", "Bash", command="good"),
                    _tool_use("t2", "Bash", command="bad"),
                ),
                _response(_text("done")),
            ],
            cancel,
        )
        run_agent_loop(provider, _registry(handler=flaky), "go", cancel=cancel, events=events)
        results = [e.data for e in list(events.queue) if e.kind == "tool_result"]
        assert [(r["id"], r["error"]) for r in results] == [("t1", False), ("t2", True)]

    def test_bad_arguments_reported(self):
        cancel = CancelToken()
        provider = _provider(
            [_response(_tool_use("t1", "Bash")), _response(_text("fine"))], cancel
        )
        run_agent_loop(provider, _registry(), "go", cancel=cancel)
        text = provider.conversation[2].content[0].text
        assert text.startswith("Error executing Bash:")
        assert "command" in text

    def test_provider_error_propagates(self):
        cancel = CancelToken()
        provider = _provider([TransportError("network down")], cancel)
        with pytest.raises(TransportError, match="network down"):
            run_agent_loop(provider, _registry(), "go", cancel=cancel)
        assert provider.conversation.turns == [Turn(USER, "go")]


class TestCancellation:
    def test_cancel_during_tool_keeps_result_and_stops(self):
        cancel = CancelToken()

        def cancel_then_answer(args, ctx):
            ctx.cancel.cancel()
            return "partial output"

        provider = _provider(
            [
                _response(_tool_use("t1", "Bash", command="long")),
                _response(_text("never sent")),
            ],
            cancel,
        )
        result = run_agent_loop(
            provider, _registry(handler=cancel_then_answer), "go", cancel=cancel
        )
        assert result.outcome == OUTCOME_CANCELED
        assert len(provider._client.messages.calls) == 1
        assert provider.conversation[-1].content == [ToolResult("t1", "partial output")]

    def test_cancel_skips_remaining_calls_and_next_run_closes_them(self):
        cancel = CancelToken()
        ran = []

        def first_cancels(args, ctx):
            ran.append(args["command"])
            ctx.cancel.cancel()
            return "done one"

        provider = _provider(
            [
                _response(
                    _tool_use("t1", "Bash", command="one"),
                    _tool_use("t2", "Bash", command="two"),
                ),
                _response(_text("resumed")),
            ],
            cancel,
        )
        registry = _registry(handler=first_cancels)
        result = run_agent_loop(provider, registry, "go", cancel=cancel)
        assert result.outcome == OUTCOME_CANCELED
        assert ran == ["one"]
        assert [u.id for u in provider.conversation.pending_tool_uses()] == ["t2"]

        cancel.reset()
        result = run_agent_loop(provider, registry, "carry on", cancel=cancel)
        assert result.outcome == OUTCOME_DONE
        conv = provider.conversation
        assert conv[2].content == [
            ToolResult("t1", "done one"),
            ToolResult("t2", CANCELED_TOOL_RESULT),
        ]
        assert conv[3] == Turn(USER, "carry on")
        assert _all_tool_uses_answered(conv)

    def test_cancel_before_inference(self):
        cancel = CancelToken()
        cancel.cancel()
        provider = _provider([_response(_text("unused"))], cancel)
        result = run_agent_loop(provider, _registry(), "go", cancel=cancel)
        assert result.outcome == OUTCOME_CANCELED
        assert provider._client.messages.calls == []

    def test_cancel_during_inference(self):
        cancel = CancelToken()
        release = threading.Event()

        def slow():
            release.wait(5)
            return _response(_text("too late"))

        provider = _provider([slow], cancel)
        threading.Timer(0.05, cancel.cancel).start()
        try:
            result = run_agent_loop(provider, _registry(), "go", cancel=cancel)
        finally:
            release.set()
        assert result.outcome == OUTCOME_CANCELED
        assert provider.conversation.turns == [Turn(USER, "go")]


class TestLimitsAndEvents:
    def test_max_turns_exhausted(self):
        cancel = CancelToken()
        provider = _provider(
            [
                _response(_text("step 1"), _tool_use("t1", "Bash", command="a")),
                _response(_text("step 2"), _tool_use("t2", "Bash", command="b")),
            ],
            cancel,
        )
        result = run_agent_loop(provider, _registry(), "go", cancel=cancel, max_turns=2)
        assert result.outcome == OUTCOME_EXHAUSTED
        assert result.turns == 2
        assert result.answer == "step 2"
        assert _all_tool_uses_answered(provider.conversation)

    def test_events_emitted_in_order(self):
        cancel = CancelToken()
        events = queue.Queue()
        provider = _provider(
            [
                _response(_text("looking"), _tool_use("t1", "Bash", command="ls")),
                _response(_text("done")),
            ],
            cancel,
        )
        run_agent_loop(provider, _registry(), "go", cancel=cancel, events=events)
        kinds = []
        while not events.empty():
            event = events.get()
            assert isinstance(event, LoopEvent)
            kinds.append(event.kind)
        assert kinds == [
            "inference",
            "assistant_text",
            "tool_call",
            "tool_result",
            "inference",
            "assistant_text",
        ]

    def test_summarized_event_when_window_full(self):
        cancel = CancelToken()
        events = queue.Queue()
        conv = Conversation()
        conv.set_system("sys")
        for i in range(3):
            conv.add_text(USER, f"q{i}")
            conv.add_text(ASSISTANT, f"a{i}")
        provider = _provider(
            [_response(_text("<summary>S</summary>")), _response(_text("answer"))],
            cancel,
            conversation=conv,
        )
        provider.session.input_tokens = provider.session.context_window
        run_agent_loop(provider, _registry(), "next", cancel=cancel, events=events)
        kinds = [events.get().kind for _ in range(events.qsize())]
        assert kinds[0] == "summarized"
        assert conv[1] == Turn(ASSISTANT, "S")
