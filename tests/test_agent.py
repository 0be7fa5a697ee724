"""Tests for the agent loop: dispatch, confirmation, limits, history."""

from io import StringIO
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from fsagent import fmt
from fsagent.agent import (
    CANCELLED_MESSAGE,
    INTERRUPTED_MESSAGE,
    Agent,
    format_tool_error,
)
from fsagent.conversation import MODEL, USER, FunctionCall, TextPart
from fsagent.model import ScriptedModelClient, make_response, turns_to_messages
from fsagent.registry import ToolDescriptor
from fsagent.report import (
    AgentError,
    ConfigError,
    MaxIterationsError,
    ReportCollector,
    StoppedByUserError,
)
from fsagent.tools import build_registry


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _call(name, args=None, call_id=None):
    return FunctionCall(name=name, args=dict(args or {}), id=call_id)


def _agent(responses, tmp_path, **kwargs):
    client = ScriptedModelClient(responses)
    kwargs.setdefault("tools", build_registry(str(tmp_path)))
    return Agent(client=client, **kwargs), client


def _looping_client():
    """A client whose model never stops calling list_directory."""
    return ScriptedModelClient(
        [make_response(function_calls=[("list_directory", {"directory_path": "."})])],
        repeat_last=True,
    )


# ---------------------------------------------------------------------------
# Basic flow
# ---------------------------------------------------------------------------


class TestPlainAnswer:
    def test_single_model_call(self, tmp_path):
        agent, client = _agent([make_response("Hello!")], tmp_path)
        response = agent.run("hi")
        assert response.text == "Hello!"
        assert len(client.calls) == 1
        history = agent.get_history()
        assert [t.role for t in history] == [USER, MODEL]
        assert history[0].text == "hi"

    def test_system_instruction_and_tools_forwarded(self, tmp_path):
        agent, client = _agent(
            [make_response("ok")], tmp_path, system_instruction="Be brief.", model="m1"
        )
        agent.run("hi")
        call = client.calls[0]
        assert call["model"] == "m1"
        assert call["system_instruction"] == "Be brief."
        assert [d["name"] for d in call["tools"]] == [
            "read_file",
            "write_file",
            "list_directory",
            "delete_file",
            "delete_directory",
        ]

    def test_no_tools_sends_none(self, tmp_path):
        agent, client = _agent([make_response("ok")], tmp_path, tools=None)
        agent.run("hi")
        assert client.calls[0]["tools"] is None

    def test_accepts_descriptor_iterable(self, tmp_path):
        echo = ToolDescriptor(
            "echo",
            "Echo text back.",
            {"type": "object", "properties": {"text": {"type": "string"}}},
            lambda text: text.upper(),
        )
        agent, _ = _agent(
            [
                make_response(function_calls=[("echo", {"text": "hey"})]),
                make_response("done"),
            ],
            tmp_path,
            tools=[echo],
        )
        agent.run("go")
        responses = agent.get_history()[2].function_responses
        assert responses[0].response == {"result": "HEY"}

    def test_invalid_max_iterations(self, tmp_path):
        with pytest.raises(ConfigError, match="at least 1"):
            Agent(client=ScriptedModelClient(), max_iterations=0)


class TestToolRound:
    def test_read_then_answer(self, tmp_path):
        (tmp_path / "notes.txt").write_text("remember milk")
        agent, client = _agent(
            [
                make_response(
                    function_calls=[_call("read_file", {"file_path": "notes.txt"}, "c1")]
                ),
                make_response("It says remember milk."),
            ],
            tmp_path,
        )
        response = agent.run("What is in notes.txt?")
        assert response.text == "It says remember milk."

        history = agent.get_history()
        assert [t.role for t in history] == [USER, MODEL, USER, MODEL]
        fr = history[2].function_responses[0]
        assert fr.name == "read_file"
        assert fr.id == "c1"
        assert fr.response == {"result": "remember milk"}
        # the second model call sees the tool result
        assert len(client.calls[1]["turns"]) == 3

    def test_multiple_calls_keep_order(self, tmp_path):
        (tmp_path / "a.txt").write_text("A")
        (tmp_path / "b.txt").write_text("B")
        agent, _ = _agent(
            [
                make_response(
                    function_calls=[
                        _call("read_file", {"file_path": "b.txt"}, "1"),
                        _call("read_file", {"file_path": "a.txt"}, "2"),
                        _call("list_directory", {"directory_path": "."}, "3"),
                    ]
                ),
                make_response("done"),
            ],
            tmp_path,
        )
        agent.run("read both")
        frs = agent.get_history()[2].function_responses
        assert [fr.id for fr in frs] == ["1", "2", "3"]
        assert frs[0].response == {"result": "B"}
        assert frs[1].response == {"result": "A"}
        assert sorted(frs[2].response["result"]) == ["a.txt", "b.txt"]

    def test_arguments_passed_by_name(self, tmp_path):
        # JSON object order differs from the declared parameter order
        agent, _ = _agent(
            [
                make_response(
                    function_calls=[
                        ("write_file", {"contents": "body", "file_path": "out.txt"})
                    ]
                ),
                make_response("written"),
            ],
            tmp_path,
        )
        agent.run("write it")
        assert (tmp_path / "out.txt").read_text() == "body"

    def test_unknown_tool(self, tmp_path):
        agent, _ = _agent(
            [
                make_response(function_calls=[("rm_rf", {"path": "/"})]),
                make_response("sorry"),
            ],
            tmp_path,
        )
        agent.run("delete everything")
        fr = agent.get_history()[2].function_responses[0]
        assert fr.response == {
            "error": "Tool 'rm_rf' not found. Available tools: read_file, "
            "write_file, list_directory, delete_file, delete_directory"
        }

    def test_tool_error_becomes_error_response(self, tmp_path):
        agent, _ = _agent(
            [
                make_response(function_calls=[("read_file", {"file_path": "nope"})]),
                make_response("not there"),
            ],
            tmp_path,
        )
        response = agent.run("read nope")
        assert response.text == "not there"
        fr = agent.get_history()[2].function_responses[0]
        assert fr.response == {"error": "File not found: 'nope'"}

    def test_missing_argument_is_reported(self, tmp_path):
        agent, _ = _agent(
            [
                make_response(function_calls=[("write_file", {"file_path": "x.txt"})]),
                make_response("oops"),
            ],
            tmp_path,
        )
        agent.run("write")
        error = agent.get_history()[2].function_responses[0].response["error"]
        assert error.startswith("Error in write_file:")
        assert not (tmp_path / "x.txt").exists()

    def test_text_alongside_calls_is_kept(self, tmp_path):
        agent, _ = _agent(
            [
                make_response(
                    "Let me look.",
                    function_calls=[("list_directory", {"directory_path": "."})],
                ),
                make_response("Empty."),
            ],
            tmp_path,
        )
        agent.run("look")
        model_turn = agent.get_history()[1]
        assert isinstance(model_turn.parts[0], TextPart)
        assert model_turn.text == "Let me look."
        assert len(model_turn.function_calls) == 1


class TestArgumentChecks:
    def test_unexpected_argument_rejected(self, tmp_path):
        other = tmp_path / "other"
        other.mkdir()
        (other / "secret.txt").write_text("S")
        work = tmp_path / "work"
        work.mkdir()
        agent, _ = _agent(
            [
                make_response(
                    function_calls=[
                        (
                            "read_file",
                            {"file_path": "secret.txt", "base_dir": str(other)},
                        )
                    ]
                ),
                make_response("no luck"),
            ],
            work,
        )
        agent.run("read the secret")
        response = agent.get_history()[2].function_responses[0].response
        assert "result" not in response
        assert response["error"] == (
            "Error in read_file: unexpected argument(s) base_dir. "
            "Expected: file_path"
        )

    def test_unexpected_argument_skips_confirmation(self, tmp_path):
        confirm = MagicMock(return_value=True)
        agent, _ = _agent(
            [
                make_response(
                    function_calls=[
                        ("delete_file", {"file_path": "x", "force": True})
                    ]
                ),
                make_response("ok"),
            ],
            tmp_path,
            confirm_action=confirm,
        )
        agent.run("delete x")
        confirm.assert_not_called()


class TestInterruptedToolRound:
    def _interrupting_tools(self):
        def boom():
            raise KeyboardInterrupt

        schema = {"type": "object", "properties": {}}
        return [
            ToolDescriptor("fine", "Works.", schema, lambda: "ok"),
            ToolDescriptor("boom", "Interrupts.", schema, boom),
        ]

    def test_results_turn_recorded_before_reraise(self, tmp_path):
        agent, _ = _agent(
            [
                make_response(
                    function_calls=[
                        _call("fine", call_id="1"),
                        _call("boom", call_id="2"),
                        _call("fine", call_id="3"),
                    ]
                )
            ],
            tmp_path,
            tools=self._interrupting_tools(),
        )
        with pytest.raises(KeyboardInterrupt):
            agent.run("go")
        history = agent.get_history()
        assert [t.role for t in history] == [USER, MODEL, USER]
        frs = history[2].function_responses
        assert [fr.id for fr in frs] == ["1", "2", "3"]
        assert frs[0].response == {"result": "ok"}
        assert frs[1].response == {"error": INTERRUPTED_MESSAGE}
        assert frs[2].response == {"error": INTERRUPTED_MESSAGE}

    def test_next_run_sends_paired_tool_messages(self, tmp_path):
        agent, client = _agent(
            [
                make_response(function_calls=[_call("boom", call_id="c1")]),
                make_response("fresh answer"),
            ],
            tmp_path,
            tools=self._interrupting_tools(),
        )
        with pytest.raises(KeyboardInterrupt):
            agent.run("go")
        assert agent.run("next question").text == "fresh answer"

        messages = turns_to_messages(client.calls[1]["turns"])
        assert [m["role"] for m in messages] == ["user", "assistant", "tool", "user"]
        assert messages[2]["tool_call_id"] == "c1"


# ---------------------------------------------------------------------------
# Confirmation and hooks
# ---------------------------------------------------------------------------


class TestConfirmation:
    def _write_responses(self):
        return [
            make_response(
                function_calls=[
                    ("write_file", {"file_path": "out.txt", "contents": "hi"})
                ]
            ),
            make_response("ok"),
        ]

    def test_denied_write_not_executed(self, tmp_path):
        confirm = MagicMock(return_value=False)
        on_call = MagicMock()
        agent, _ = _agent(
            self._write_responses(),
            tmp_path,
            confirm_action=confirm,
            on_tool_call=on_call,
        )
        agent.run("write")
        assert not (tmp_path / "out.txt").exists()
        confirm.assert_called_once_with(
            "write_file", {"file_path": "out.txt", "contents": "hi"}
        )
        on_call.assert_not_called()
        fr = agent.get_history()[2].function_responses[0]
        assert fr.response == {"error": CANCELLED_MESSAGE}
        assert CANCELLED_MESSAGE == "Action cancelled by user"

    def test_approved_write_executes(self, tmp_path):
        confirm = MagicMock(return_value=True)
        on_call = MagicMock()
        agent, _ = _agent(
            self._write_responses(),
            tmp_path,
            confirm_action=confirm,
            on_tool_call=on_call,
        )
        agent.run("write")
        assert (tmp_path / "out.txt").read_text() == "hi"
        on_call.assert_called_once_with(
            "write_file", {"file_path": "out.txt", "contents": "hi"}
        )

    def test_no_hook_means_no_gate(self, tmp_path):
        agent, _ = _agent(self._write_responses(), tmp_path)
        agent.run("write")
        assert (tmp_path / "out.txt").read_text() == "hi"

    def test_reads_never_ask(self, tmp_path):
        confirm = MagicMock(return_value=False)
        agent, _ = _agent(
            [
                make_response(function_calls=[("list_directory", {"directory_path": "."})]),
                make_response("ok"),
            ],
            tmp_path,
            confirm_action=confirm,
        )
        agent.run("ls")
        confirm.assert_not_called()
        fr = agent.get_history()[2].function_responses[0]
        assert fr.response == {"result": []}

    def test_denied_delete_keeps_file(self, tmp_path):
        (tmp_path / "keep.txt").write_text("x")
        agent, _ = _agent(
            [
                make_response(function_calls=[("delete_file", {"file_path": "keep.txt"})]),
                make_response("ok"),
            ],
            tmp_path,
            confirm_action=lambda name, args: False,
        )
        agent.run("delete keep.txt")
        assert (tmp_path / "keep.txt").exists()

    def test_unknown_tool_skips_confirmation(self, tmp_path):
        confirm = MagicMock(return_value=True)
        agent, _ = _agent(
            [make_response(function_calls=[("nuke", {})]), make_response("ok")],
            tmp_path,
            confirm_action=confirm,
        )
        agent.run("nuke")
        confirm.assert_not_called()

    def test_hook_gets_a_copy_of_args(self, tmp_path):
        def greedy_confirm(name, args):
            args["file_path"] = "elsewhere.txt"
            return True

        agent, _ = _agent(
            self._write_responses(), tmp_path, confirm_action=greedy_confirm
        )
        agent.run("write")
        assert (tmp_path / "out.txt").exists()
        assert not (tmp_path / "elsewhere.txt").exists()


# ---------------------------------------------------------------------------
# Iteration limit
# ---------------------------------------------------------------------------


class TestIterationLimit:
    def test_raises_without_hook(self, tmp_path):
        client = _looping_client()
        agent = Agent(client=client, tools=build_registry(str(tmp_path)), max_iterations=3)
        with pytest.raises(MaxIterationsError) as exc:
            agent.run("loop")
        assert str(exc.value) == "Agent exceeded maximum iterations (3)"
        assert exc.value.iterations == 3
        assert len(client.calls) == 3

    def test_history_ends_with_tool_results(self, tmp_path):
        agent = Agent(
            client=_looping_client(),
            tools=build_registry(str(tmp_path)),
            max_iterations=2,
        )
        with pytest.raises(MaxIterationsError):
            agent.run("loop")
        history = agent.get_history()
        assert [t.role for t in history] == [USER, MODEL, USER, MODEL, USER]
        assert history[-1].function_responses

    def test_hook_stop(self, tmp_path):
        hook = MagicMock(return_value=False)
        client = _looping_client()
        agent = Agent(
            client=client,
            tools=build_registry(str(tmp_path)),
            max_iterations=2,
            on_max_iterations_reached=hook,
        )
        with pytest.raises(StoppedByUserError) as exc:
            agent.run("loop")
        hook.assert_called_once_with(2)
        assert str(exc.value) == "Agent stopped after 2 iterations by user"
        assert len(client.calls) == 2

    def test_hook_continue_extends_budget(self, tmp_path):
        hook = MagicMock(side_effect=[True, False])
        client = _looping_client()
        agent = Agent(
            client=client,
            tools=build_registry(str(tmp_path)),
            max_iterations=2,
            on_max_iterations_reached=hook,
        )
        with pytest.raises(StoppedByUserError) as exc:
            agent.run("loop")
        assert [c.args for c in hook.call_args_list] == [(2,), (4,)]
        assert exc.value.iterations == 4
        assert len(client.calls) == 4

    def test_answer_after_continue(self, tmp_path):
        loop = make_response(
            function_calls=[("list_directory", {"directory_path": "."})]
        )
        agent, client = _agent(
            [loop, make_response("finally")],
            tmp_path,
            max_iterations=1,
            on_max_iterations_reached=lambda n: True,
        )
        assert agent.run("go").text == "finally"
        assert len(client.calls) == 2

    def test_budget_resets_per_run(self, tmp_path):
        loop = make_response(
            function_calls=[("list_directory", {"directory_path": "."})]
        )
        agent, _ = _agent(
            [loop, make_response("one"), loop, make_response("two")],
            tmp_path,
            max_iterations=2,
        )
        assert agent.run("first").text == "one"
        assert agent.run("second").text == "two"


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestHistory:
    def test_persists_across_runs(self, tmp_path):
        agent, client = _agent(
            [make_response("first answer"), make_response("second answer")], tmp_path
        )
        agent.run("first question")
        agent.run("second question")
        turns = client.calls[1]["turns"]
        assert [t.text for t in turns] == [
            "first question",
            "first answer",
            "second question",
        ]

    def test_clear_history(self, tmp_path):
        agent, client = _agent(
            [make_response("a"), make_response("b")], tmp_path
        )
        agent.run("q1")
        assert agent.clear_history() == 2
        assert agent.get_history() == ()
        agent.run("q2")
        assert [t.text for t in client.calls[1]["turns"]] == ["q2"]

    def test_transport_error_propagates(self, tmp_path):
        agent, _ = _agent([], tmp_path)
        with pytest.raises(AgentError, match="no more responses"):
            agent.run("hello")
        history = agent.get_history()
        assert len(history) == 1
        assert history[0].text == "hello"


# ---------------------------------------------------------------------------
# Reporting and diagnostics
# ---------------------------------------------------------------------------


class TestReportAndVerbose:
    def test_report_records_outcomes(self, tmp_path):
        (tmp_path / "a.txt").write_text("x")
        report = ReportCollector()
        agent, _ = _agent(
            [
                make_response(
                    function_calls=[
                        ("read_file", {"file_path": "a.txt"}),
                        ("read_file", {"file_path": "missing.txt"}),
                        ("delete_file", {"file_path": "a.txt"}),
                        ("bogus", {}),
                    ]
                ),
                make_response("done"),
            ],
            tmp_path,
            confirm_action=lambda n, a: False,
            report=report,
        )
        agent.run("go")
        assert report.llm_calls == 2
        assert report.tool_stats["read_file"] == {
            "ok": 1,
            "error": 1,
            "denied": 0,
            "unknown": 0,
        }
        assert report.tool_stats["delete_file"]["denied"] == 1
        assert report.tool_stats["bogus"]["unknown"] == 1

    def test_report_records_limit_decision(self, tmp_path):
        report = ReportCollector()
        agent = Agent(
            client=_looping_client(),
            tools=build_registry(str(tmp_path)),
            max_iterations=1,
            on_max_iterations_reached=lambda n: False,
            report=report,
        )
        with pytest.raises(StoppedByUserError):
            agent.run("loop")
        limits = [e for e in report.events if e["type"] == "iteration_limit"]
        assert limits == [{"iteration": 1, "type": "iteration_limit", "decision": "stop"}]

    def test_verbose_writes_to_stderr_console(self, tmp_path):
        buf = StringIO()
        old = fmt._console
        fmt._console = Console(file=buf, no_color=True, width=100)
        try:
            agent, _ = _agent(
                [
                    make_response(
                        function_calls=[("list_directory", {"directory_path": "."})]
                    ),
                    make_response("done"),
                ],
                tmp_path,
                verbose=True,
            )
            agent.run("ls")
        finally:
            fmt._console = old
        out = buf.getvalue()
        assert "Iteration 1/15" in out
        assert "list_directory" in out
        assert "Agent finished" in out


# ---------------------------------------------------------------------------
# format_tool_error
# ---------------------------------------------------------------------------


class TestFormatToolError:
    def test_tool_error_verbatim(self, tmp_path):
        from fsagent.tools import PathNotFoundError

        exc = PathNotFoundError("File", "x.txt")
        assert format_tool_error("read_file", exc) == "File not found: 'x.txt'"

    def test_not_found(self):
        exc = FileNotFoundError(2, "No such file or directory")
        msg = format_tool_error("read_file", exc)
        assert msg.startswith("File or directory not found (")
        assert msg.endswith("Check the path and try again.")

    def test_permission_denied(self):
        exc = PermissionError(13, "Permission denied")
        msg = format_tool_error("write_file", exc)
        assert msg.startswith("Permission denied (")
        assert "write_file is not allowed" in msg

    def test_is_a_directory(self):
        exc = IsADirectoryError(21, "Is a directory")
        msg = format_tool_error("read_file", exc)
        assert msg.startswith("Expected a file but the path is a directory")

    def test_generic(self):
        assert format_tool_error("t", ValueError("boom")) == "Error in t: boom"

    def test_empty_message_uses_type_name(self):
        assert format_tool_error("t", RuntimeError()) == "Error in t: RuntimeError"
