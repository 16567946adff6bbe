"""Tests for the context-window check and summarization."""

import types

import pytest

from tandem import context
from tandem.conversation import ASSISTANT, SYSTEM, USER, Conversation, ToolCallRequest, Turn
from tandem.errors import EmptySummaryError, TransportError
from tandem.providers import ProviderSession


class FakeProvider:
    """Just enough of a Provider for context.summarize()."""

    def __init__(self, conversation, reply="<summary>short</summary>", error=None):
        self.conversation = conversation
        self.session = ProviderSession("m", 1000, 1.0, 1.0)
        self.summary_prompt = "Summarize please."
        self.reply = reply
        self.error = error
        self.calls = []

    def complete(self, turns, *, system, temperature):
        self.calls.append(types.SimpleNamespace(turns=turns, system=system, temperature=temperature))
        if self.error:
            raise self.error
        return self.reply


def _conversation(n_pairs=3):
    conv = Conversation()
    conv.set_system("sys")
    for i in range(n_pairs):
        conv.add_text(USER, f"q{i}")
        conv.add_text(ASSISTANT, f"a{i}")
    return conv


class TestShouldSummarize:
    def test_threshold_is_strict(self):
        s = ProviderSession("m", 1000, 0.0, 0.0)
        s.input_tokens = 800
        assert not context.should_summarize(s)
        s.input_tokens = 801
        assert context.should_summarize(s)

    def test_idempotent(self):
        s = ProviderSession("m", 1000, 0.0, 0.0, input_tokens=900)
        assert context.should_summarize(s) == context.should_summarize(s)

    def test_zero_window_never_summarizes(self):
        s = ProviderSession("m", 0, 0.0, 0.0, input_tokens=10)
        assert not context.should_summarize(s)


class TestExtractSummary:
    def test_summary_tags(self):
        assert context.extract_summary("blah <summary>\n inner \n</summary> tail") == "inner"

    def test_banner_delimiters(self):
        raw = "Here:\nCONVERSATION SUMMARY:\nthe gist\nEND OF SUMMARY\nthanks"
        assert context.extract_summary(raw) == "the gist"

    def test_unterminated_tag_used_as_is(self):
        assert context.extract_summary(" <summary> partial ") == "<summary> partial"

    def test_unterminated_banner_used_as_is(self):
        raw = "CONVERSATION SUMMARY: half done"
        assert context.extract_summary(raw) == raw

    def test_plain_text_trimmed(self):
        assert context.extract_summary("  just text \n") == "just text"

    def test_empty(self):
        assert context.extract_summary("<summary>  </summary>") == ""


class TestSummarize:
    def test_two_turns_or_fewer_is_noop(self):
        conv = Conversation()
        conv.set_system("sys")
        conv.add_text(USER, "hi")
        provider = FakeProvider(conv)
        provider.session.input_tokens = 999
        before = conv.turns
        assert context.summarize(provider) is False
        assert conv.turns == before
        assert provider.calls == []
        assert provider.session.input_tokens == 999

    def test_replaces_body_and_resets_counters(self):
        conv = _conversation()
        provider = FakeProvider(conv)
        provider.session.record_usage(900, 50)
        assert context.summarize(provider) is True
        assert [t.role for t in conv] == [SYSTEM, ASSISTANT, USER, ASSISTANT]
        assert conv[0].content == "sys"
        assert conv[1] == Turn(ASSISTANT, "short")
        assert [t.content for t in conv.turns[2:]] == ["q2", "a2"]
        assert provider.session.input_tokens == 0
        assert provider.session.output_tokens == 0
        assert provider.session.total_input_tokens == 900

    def test_request_shape(self):
        conv = _conversation()
        provider = FakeProvider(conv)
        context.summarize(provider)
        call = provider.calls[0]
        assert call.system == "Summarize please."
        assert call.temperature == 0.2
        assert call.turns[-1] == Turn(USER, context.SUMMARY_NUDGE)
        assert all(t.role != SYSTEM for t in call.turns)

    def test_packaged_prompt_used_by_default(self):
        conv = _conversation()
        provider = FakeProvider(conv)
        provider.summary_prompt = None
        context.summarize(provider)
        assert "<summary>" in provider.calls[0].system

    def test_empty_summary_is_an_error(self):
        conv = _conversation()
        provider = FakeProvider(conv, reply="   ")
        before = conv.turns
        with pytest.raises(EmptySummaryError):
            context.summarize(provider)
        assert conv.turns == before

    def test_provider_error_leaves_conversation(self):
        conv = _conversation()
        provider = FakeProvider(conv, error=TransportError("boom"))
        before = conv.turns
        with pytest.raises(TransportError):
            context.summarize(provider)
        assert conv.turns == before

    def test_tool_pair_kept_together(self):
        conv = _conversation()
        conv.add_assistant("", [ToolCallRequest("t1", "Ls")])
        conv.add_tool_result("t1", "files")
        conv.add_text(ASSISTANT, "there are files")
        provider = FakeProvider(conv)
        context.summarize(provider)
        # The tail opened with the result turn, so its assistant turn was kept
        assert conv[2].tool_uses[0].id == "t1"
        assert conv[3].tool_results[0].tool_use_id == "t1"
        assert conv[4].content == "there are files"
