"""Tests for the interactive REPL."""

import types
from unittest.mock import MagicMock, patch

from tandem import fmt
from tandem.agent import repl_loop
from tandem.conversation import ASSISTANT, SYSTEM, USER
from tandem.errors import TransportError
from tandem.session import Session


def _text_response(text, input_tokens=50, output_tokens=5):
    return types.SimpleNamespace(
        content=[types.SimpleNamespace(type="text", text=text)],
        usage=types.SimpleNamespace(input_tokens=input_tokens, output_tokens=output_tokens),
    )


class FakeMessages:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _session(tmp_path, responses=()):
    session = Session(
        base_dir=str(tmp_path),
        provider="anthropic",
        api_key="sk-ant-test",
        no_rules=True,
    )
    session.provider._client = types.SimpleNamespace(messages=FakeMessages(responses))
    return session


class TestReplLoop:
    def setup_method(self):
        fmt.init(no_color=True)

    def _mock_session(self, inputs):
        """Create a mock PromptSession whose .prompt() returns values from inputs."""
        mock_session = MagicMock()
        side = []
        for v in inputs:
            if v is EOFError:
                side.append(EOFError())
            elif v is KeyboardInterrupt:
                side.append(KeyboardInterrupt())
            else:
                side.append(v)
        mock_session.prompt.side_effect = side
        return mock_session

    def _patch_session(self, inputs):
        return patch("prompt_toolkit.PromptSession", return_value=self._mock_session(inputs))

    def test_exit_command(self, tmp_path):
        session = _session(tmp_path)
        with self._patch_session(["/exit"]):
            repl_loop(session)
        assert [t.role for t in session.conversation] == [SYSTEM]
        assert (tmp_path / ".tandem").is_dir()

    def test_quit_is_case_insensitive(self, tmp_path):
        session = _session(tmp_path)
        with self._patch_session(["/QUIT"]):
            repl_loop(session)
        assert len(session.conversation) == 1

    def test_eof_and_ctrl_c_at_prompt_exit(self, tmp_path):
        for terminator in (EOFError, KeyboardInterrupt):
            session = _session(tmp_path)
            with self._patch_session([terminator]):
                repl_loop(session)
            assert len(session.conversation) == 1

    def test_empty_lines_ignored(self, tmp_path, capsys):
        session = _session(tmp_path, [_text_response("hi there")])
        with self._patch_session(["", "   ", "hello", "/exit"]):
            repl_loop(session, verbose=False)
        assert len(session.provider._client.messages.calls) == 1
        assert capsys.readouterr().out == "hi there\n"

    def test_history_persists_between_questions(self, tmp_path):
        session = _session(tmp_path, [_text_response("one"), _text_response("two")])
        with self._patch_session(["first question", "second question", "/exit"]):
            repl_loop(session, verbose=False)
        second = session.provider._client.messages.calls[1]["messages"]
        assert [m["role"] for m in second] == ["user", "assistant", "user"]
        assert second[0]["content"] == "first question"

    def test_initial_question(self, tmp_path, capsys):
        session = _session(tmp_path, [_text_response("started")])
        with self._patch_session(["/exit"]):
            repl_loop(session, initial_question="kick off", verbose=False)
        assert session.conversation[1].content == "kick off"
        assert "started" in capsys.readouterr().out

    def test_unknown_slash_command_goes_to_model(self, tmp_path):
        session = _session(tmp_path, [_text_response("no such command")])
        with self._patch_session(["/frobnicate now", "/exit"]):
            repl_loop(session, verbose=False)
        assert session.conversation[1].content == "/frobnicate now"

    def test_help(self, tmp_path, capsys):
        session = _session(tmp_path)
        with self._patch_session(["/help", "/exit"]):
            repl_loop(session)
        assert "/compact" in capsys.readouterr().err

    def test_clear_keeps_system_turn(self, tmp_path, capsys):
        session = _session(tmp_path, [_text_response("answer")])
        with self._patch_session(["question", "/clear", "/exit"]):
            repl_loop(session, verbose=False)
        assert [t.role for t in session.conversation] == [SYSTEM]
        assert "context cleared (2 turns removed)" in capsys.readouterr().err

    def test_cost(self, tmp_path, capsys):
        session = _session(tmp_path, [_text_response("answer", 1000, 100)])
        with self._patch_session(["question", "/cost", "/exit"]):
            repl_loop(session, verbose=False)
        assert "Tokens: 1.0k input, 100 output" in capsys.readouterr().err

    def test_compact_nothing_to_do(self, tmp_path, capsys):
        session = _session(tmp_path)
        with self._patch_session(["/compact", "/exit"]):
            repl_loop(session)
        assert "nothing to compact" in capsys.readouterr().err

    def test_compact_summarizes(self, tmp_path, capsys):
        session = _session(
            tmp_path,
            [
                _text_response("a1"),
                _text_response("a2"),
                _text_response("<summary>we talked</summary>"),
            ],
        )
        with self._patch_session(["q1", "q2", "/compact", "/exit"]):
            repl_loop(session, verbose=False)
        conv = session.conversation
        assert conv[1].role == ASSISTANT
        assert conv[1].content == "we talked"
        assert [t.content for t in conv.turns[2:]] == ["q2", "a2"]
        assert conv[2].role == USER
        assert "compacted:" in capsys.readouterr().err

    def test_provider_error_does_not_end_repl(self, tmp_path, capsys):
        session = _session(
            tmp_path, [TransportError("overloaded"), _text_response("better now")]
        )
        with self._patch_session(["first", "second", "/exit"]):
            repl_loop(session, verbose=False)
        captured = capsys.readouterr()
        assert "overloaded" in captured.err
        assert captured.out == "better now\n"

    def _write_command(self, tmp_path, monkeypatch, name, body):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        directory = tmp_path / "xdg" / "tandem" / "cmds"
        directory.mkdir(parents=True, exist_ok=True)
        (directory / f"{name}.md").write_text(body)

    def test_custom_command_expands_template(self, tmp_path, monkeypatch):
        self._write_command(tmp_path, monkeypatch, "review", "Review {{.ARGS}} carefully.")
        session = _session(tmp_path, [_text_response("looks fine")])
        with self._patch_session(["/cmd:review main.py", "/exit"]):
            repl_loop(session, verbose=False)
        assert session.conversation[1].content == "Review main.py carefully."
        assert session.conversation[2].content == "looks fine"

    def test_unknown_custom_command_not_sent(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
        session = _session(tmp_path)
        with self._patch_session(["/cmd:nope", "/exit"]):
            repl_loop(session, verbose=False)
        assert session.provider._client.messages.calls == []
        assert len(session.conversation) == 1
        assert "unknown command /cmd:nope" in capsys.readouterr().err

    def test_empty_custom_command_skipped(self, tmp_path, monkeypatch, capsys):
        self._write_command(tmp_path, monkeypatch, "blank", "{{.ARGS}}")
        session = _session(tmp_path)
        with self._patch_session(["/cmd:blank", "/exit"]):
            repl_loop(session, verbose=False)
        assert session.provider._client.messages.calls == []
        assert "empty prompt" in capsys.readouterr().err

    def test_help_lists_custom_commands(self, tmp_path, monkeypatch, capsys):
        self._write_command(tmp_path, monkeypatch, "review", "Review {{.ARGS}}")
        session = _session(tmp_path)
        with self._patch_session(["/help", "/exit"]):
            repl_loop(session)
        err = capsys.readouterr().err
        assert "Custom commands:" in err
        assert "/cmd:review" in err
