"""Tests for consult.threads: LiteLLM-backed threads and their transcripts."""

import json
import types
from unittest.mock import patch

import pytest

from consult import threads as threads_mod
from consult.report import ServiceError, ThreadNotFoundError
from consult.threads import (
    EARLIER_MARKER,
    TOOL_ROUNDS_MARKER,
    LLMThreads,
    ThreadOptions,
    call_llm,
    clamp_output_tokens,
    drop_earlier_turns,
    drop_middle_turns,
    group_into_turns,
)


def _make_response(content=None, tool_calls=None, finish_reason="stop"):
    """Build a fake litellm completion response."""
    msg = types.SimpleNamespace(content=content, tool_calls=tool_calls, role="assistant")
    choice = types.SimpleNamespace(message=msg, finish_reason=finish_reason)
    return types.SimpleNamespace(choices=[choice])


def _make_tool_call(name, arguments, call_id="call_1"):
    fn = types.SimpleNamespace(name=name, arguments=json.dumps(arguments))
    return types.SimpleNamespace(id=call_id, function=fn)


def _service(tmp_path, **overrides):
    kwargs = dict(model="openai/test-model", api_key="sk-test")
    kwargs.update(overrides)
    return LLMThreads(tmp_path / "threads", **kwargs)


# ---------------------------------------------------------------------------
# call_llm
# ---------------------------------------------------------------------------


class TestCallLlm:
    def test_passes_model_and_key(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _make_response("ok")
            msg, finish = call_llm(
                "openai/gpt-5",
                [{"role": "user", "content": "hi"}],
                tools=None,
                max_output_tokens=100,
                temperature=None,
                api_key="sk-x",
                base_url=None,
            )
        kwargs = mock_comp.call_args[1]
        assert kwargs["model"] == "openai/gpt-5"
        assert kwargs["api_key"] == "sk-x"
        assert kwargs["max_tokens"] == 100
        assert "api_base" not in kwargs
        assert "tools" not in kwargs
        assert "temperature" not in kwargs
        assert msg.content == "ok"
        assert finish == "stop"

    def test_optional_settings(self):
        with patch("litellm.completion") as mock_comp:
            mock_comp.return_value = _make_response("ok")
            call_llm(
                "m",
                [],
                tools=[{"type": "function"}],
                max_output_tokens=10,
                temperature=0.2,
                api_key=None,
                base_url="https://proxy.example",
            )
        kwargs = mock_comp.call_args[1]
        assert kwargs["api_base"] == "https://proxy.example"
        assert kwargs["tool_choice"] == "auto"
        assert kwargs["temperature"] == 0.2

    def test_errors_become_service_errors(self):
        with patch("litellm.completion", side_effect=RuntimeError("boom")):
            with pytest.raises(ServiceError, match="LLM call failed: boom"):
                call_llm(
                    "m",
                    [],
                    tools=None,
                    max_output_tokens=10,
                    temperature=None,
                    api_key=None,
                    base_url=None,
                )


# ---------------------------------------------------------------------------
# Threads and transcripts
# ---------------------------------------------------------------------------


class TestThreads:
    def test_new_thread_run_saves_transcript(self, tmp_path):
        service = _service(tmp_path)
        thread = service.start_thread(ThreadOptions())
        with patch("litellm.completion", return_value=_make_response("4")):
            result = thread.run("What is 2+2?")
        assert result.final_response == "4"
        assert result.turns == 1
        data = json.loads(service.transcript_path(thread.id).read_text())
        assert data["id"] == thread.id
        assert [m["role"] for m in data["messages"]] == ["user", "assistant"]
        assert data["messages"][0]["content"] == "What is 2+2?"

    def test_system_prompt_not_stored(self, tmp_path):
        service = _service(tmp_path, system_prompt="Be terse.")
        thread = service.start_thread()
        with patch("litellm.completion", return_value=_make_response("ok")) as m:
            thread.run("q")
        sent = m.call_args[1]["messages"]
        assert sent[0] == {"role": "system", "content": "Be terse."}
        assert all(msg["role"] != "system" for msg in thread.messages)

    def test_resume_sends_history(self, tmp_path):
        service = _service(tmp_path)
        thread = service.start_thread()
        with patch("litellm.completion", return_value=_make_response("4")):
            thread.run("What is 2+2?")

        resumed = service.resume_thread(thread.id)
        with patch("litellm.completion", return_value=_make_response("8")) as m:
            result = resumed.run("And doubled?")
        sent = m.call_args[1]["messages"]
        assert [msg["content"] for msg in sent[1:]] == ["What is 2+2?", "4", "And doubled?"]
        assert result.final_response == "8"
        data = json.loads(service.transcript_path(thread.id).read_text())
        assert len(data["messages"]) == 4

    def test_resume_unknown_thread(self, tmp_path):
        with pytest.raises(ThreadNotFoundError, match="not found"):
            _service(tmp_path).resume_thread("does-not-exist")

    def test_resume_rejects_path_like_ids(self, tmp_path):
        with pytest.raises(ThreadNotFoundError, match="invalid thread id"):
            _service(tmp_path).resume_thread("../state")

    def test_resume_corrupt_transcript(self, tmp_path):
        service = _service(tmp_path)
        service.threads_dir.mkdir(parents=True)
        service.transcript_path("bad").write_text("{", encoding="utf-8")
        with pytest.raises(ServiceError, match="cannot read transcript"):
            service.resume_thread("bad")

    def test_failed_run_leaves_transcript(self, tmp_path):
        service = _service(tmp_path)
        thread = service.start_thread()
        with patch("litellm.completion", return_value=_make_response("first")):
            thread.run("one")
        before = service.transcript_path(thread.id).read_text()

        resumed = service.resume_thread(thread.id)
        with patch("litellm.completion", side_effect=RuntimeError("down")):
            with pytest.raises(ServiceError):
                resumed.run("two")
        assert service.transcript_path(thread.id).read_text() == before

    def test_failed_first_run_writes_nothing(self, tmp_path):
        service = _service(tmp_path)
        thread = service.start_thread()
        with patch("litellm.completion", side_effect=RuntimeError("down")):
            with pytest.raises(ServiceError):
                thread.run("one")
        assert not service.transcript_path(thread.id).exists()

    def test_empty_content_is_empty_response(self, tmp_path):
        thread = _service(tmp_path).start_thread()
        with patch("litellm.completion", return_value=_make_response(None)):
            assert thread.run("q").final_response == ""


# ---------------------------------------------------------------------------
# Codebase access
# ---------------------------------------------------------------------------


class TestCodebaseAccess:
    def test_no_tools_without_working_directory(self, tmp_path):
        thread = _service(tmp_path).start_thread()
        with patch("litellm.completion", return_value=_make_response("ok")) as m:
            thread.run("q")
        assert "tools" not in m.call_args[1]

    def test_tool_loop_reads_codebase(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        (repo / "app.py").write_text("SECRET = 42\n", encoding="utf-8")
        service = _service(tmp_path)
        thread = service.start_thread(ThreadOptions(working_directory=str(repo)))

        responses = [
            _make_response(
                None,
                tool_calls=[_make_tool_call("read_file", {"file_path": "app.py"})],
                finish_reason="tool_calls",
            ),
            _make_response("SECRET is 42"),
        ]
        with patch("litellm.completion", side_effect=responses) as m:
            result = thread.run("What is SECRET?")

        assert result.final_response == "SECRET is 42"
        assert result.turns == 2
        first_call = m.call_args_list[0][1]
        assert first_call["tools"]
        assert str(repo) in first_call["messages"][0]["content"]
        tool_msg = m.call_args_list[1][1]["messages"][-1]
        assert tool_msg["role"] == "tool"
        assert tool_msg["tool_call_id"] == "call_1"
        assert "1: SECRET = 42" in tool_msg["content"]

    def test_tool_errors_go_back_to_model(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        thread = _service(tmp_path).start_thread(
            ThreadOptions(working_directory=str(repo))
        )
        bad = types.SimpleNamespace(
            id="c1", function=types.SimpleNamespace(name="read_file", arguments="{bad")
        )
        unknown = _make_tool_call("write_file", {"file_path": "x"}, call_id="c2")
        responses = [
            _make_response(None, tool_calls=[bad, unknown]),
            _make_response("done"),
        ]
        with patch("litellm.completion", side_effect=responses):
            thread.run("q")
        tool_msgs = [m for m in thread.messages if m["role"] == "tool"]
        assert tool_msgs[0]["content"].startswith("error: invalid JSON")
        assert tool_msgs[1]["content"].startswith("error:")
        assert "Unknown tool" in tool_msgs[1]["content"]

    def test_last_turn_has_no_tools(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        service = _service(tmp_path, max_turns=2)
        thread = service.start_thread(ThreadOptions(working_directory=str(repo)))
        call = _make_tool_call("list_files", {"pattern": "*"})
        responses = [
            _make_response(None, tool_calls=[call]),
            _make_response("answer without tools"),
        ]
        with patch("litellm.completion", side_effect=responses) as m:
            result = thread.run("q")
        assert "tools" in m.call_args_list[0][1]
        assert "tools" not in m.call_args_list[1][1]
        assert result.final_response == "answer without tools"

    def test_stray_tool_calls_on_last_turn_are_dropped(self, tmp_path):
        repo = tmp_path / "repo"
        repo.mkdir()
        service = _service(tmp_path, max_turns=1)
        thread = service.start_thread(ThreadOptions(working_directory=str(repo)))
        stray = _make_response("partial", tool_calls=[_make_tool_call("grep", {"pattern": "x"})])
        with patch("litellm.completion", return_value=stray):
            result = thread.run("q")
        assert result.final_response == "partial"
        assert "tool_calls" not in thread.messages[-1]


# ---------------------------------------------------------------------------
# Context budget
# ---------------------------------------------------------------------------


def _tool_turn(call_id):
    return [
        {
            "role": "assistant",
            "content": None,
            "tool_calls": [
                {"id": call_id, "type": "function", "function": {"name": "grep", "arguments": "{}"}}
            ],
        },
        {"role": "tool", "tool_call_id": call_id, "content": "result"},
    ]


class TestContextBudget:
    def test_group_keeps_tool_results_with_call(self):
        messages = [{"role": "user", "content": "q"}] + _tool_turn("a") + [
            {"role": "assistant", "content": "answer"}
        ]
        turns = group_into_turns(messages)
        assert [len(t) for t in turns] == [1, 2, 1]

    def test_drop_earlier_keeps_newest(self):
        history = [{"role": "user", "content": f"q{i}"} for i in range(6)]
        result = drop_earlier_turns(history, keep=2)
        assert result[0]["content"] == EARLIER_MARKER
        assert [m["content"] for m in result[1:]] == ["q4", "q5"]

    def test_drop_earlier_replaces_previous_marker(self):
        history = [{"role": "user", "content": EARLIER_MARKER}] + [
            {"role": "user", "content": f"q{i}"} for i in range(3)
        ]
        result = drop_earlier_turns(history, keep=1)
        assert [m["content"] for m in result] == [EARLIER_MARKER, "q2"]

    def test_drop_earlier_never_splits_tool_turn(self):
        history = [{"role": "user", "content": "q"}] * 3 + _tool_turn("a")
        result = drop_earlier_turns(history, keep=1)
        assert [m["role"] for m in result[1:]] == ["assistant", "tool"]

    def test_drop_middle_keeps_prompt(self):
        prompt = {"role": "user", "content": "the question"}
        current = [prompt]
        for i in range(5):
            current += _tool_turn(f"c{i}")
        result = drop_middle_turns(current)
        assert result[0] is prompt
        assert result[1]["content"] == TOOL_ROUNDS_MARKER
        assert [m["tool_call_id"] for m in result if m["role"] == "tool"] == [
            "c2",
            "c3",
            "c4",
        ]

    def test_drop_middle_nothing_to_drop(self):
        current = [{"role": "user", "content": "q"}] + _tool_turn("a")
        assert drop_middle_turns(current) == current

    def test_over_budget_history_is_trimmed(self, tmp_path, monkeypatch):
        service = _service(tmp_path, max_context_tokens=1000, max_output_tokens=100)
        thread = service.start_thread()
        thread.messages = [
            {"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"}
            for i in range(10)
        ]
        monkeypatch.setattr(
            threads_mod, "estimate_tokens", lambda messages, tools=None: 200 * len(messages)
        )
        with patch("litellm.completion", return_value=_make_response("ok")) as m:
            thread.run("latest")
        sent = [msg["content"] for msg in m.call_args[1]["messages"][1:]]
        assert sent == [EARLIER_MARKER, "m9", "latest"]

    def test_question_survives_long_tool_loop(self, tmp_path, monkeypatch):
        repo = tmp_path / "repo"
        repo.mkdir()
        (repo / "app.py").write_text("x = 1\n", encoding="utf-8")
        service = _service(tmp_path, max_context_tokens=1000, max_output_tokens=100)
        thread = service.start_thread(ThreadOptions(working_directory=str(repo)))
        monkeypatch.setattr(
            threads_mod, "estimate_tokens", lambda messages, tools=None: 100 * len(messages)
        )
        responses = [
            _make_response(
                None,
                tool_calls=[_make_tool_call("read_file", {"file_path": "app.py"}, f"c{i}")],
                finish_reason="tool_calls",
            )
            for i in range(5)
        ] + [_make_response("x is 1")]

        with patch("litellm.completion", side_effect=responses) as m:
            result = thread.run("THE QUESTION")

        assert result.final_response == "x is 1"
        for call in m.call_args_list:
            assert "THE QUESTION" in [msg["content"] for msg in call[1]["messages"]]
        last_sent = [msg["content"] for msg in m.call_args_list[-1][1]["messages"]]
        assert last_sent.count(TOOL_ROUNDS_MARKER) == 1

        stored = service.resume_thread(thread.id)
        assert "THE QUESTION" in [msg["content"] for msg in stored.messages]

    def test_short_history_kept_in_small_window(self, tmp_path, monkeypatch):
        def by_chars(messages, tools=None):
            return sum(len(msg.get("content") or "") for msg in messages)

        monkeypatch.setattr(threads_mod, "estimate_tokens", by_chars)
        service = _service(tmp_path, max_context_tokens=8000)
        thread = service.start_thread()
        with patch("litellm.completion", return_value=_make_response("a0")):
            thread.run("q0")
        with patch("litellm.completion", return_value=_make_response("a1")):
            service.resume_thread(thread.id).run("q1")
        with patch("litellm.completion", return_value=_make_response("a2")) as m:
            service.resume_thread(thread.id).run("q2")

        sent = m.call_args[1]["messages"]
        assert [msg["content"] for msg in sent[1:]] == ["q0", "a0", "q1", "a1", "q2"]
        assert m.call_args[1]["max_tokens"] == 8000 - by_chars(sent)

    def test_no_budget_sends_everything(self, tmp_path):
        thread = _service(tmp_path).start_thread()
        thread.messages = [{"role": "user", "content": f"m{i}"} for i in range(20)]
        with patch("litellm.completion", return_value=_make_response("ok")) as m:
            thread.run("latest")
        assert len(m.call_args[1]["messages"]) == 22
        assert m.call_args[1]["max_tokens"] == 16384


class TestClampOutputTokens:
    def test_no_window_keeps_request(self):
        assert clamp_output_tokens([], None, None, 16384) == 16384

    def test_shrinks_to_remaining_room(self, monkeypatch):
        monkeypatch.setattr(threads_mod, "estimate_tokens", lambda messages, tools=None: 7000)
        assert clamp_output_tokens([], None, 8000, 16384) == 1000

    def test_keeps_request_when_room(self, monkeypatch):
        monkeypatch.setattr(threads_mod, "estimate_tokens", lambda messages, tools=None: 10)
        assert clamp_output_tokens([], None, 200000, 16384) == 16384

    def test_full_window_leaves_one(self, monkeypatch):
        monkeypatch.setattr(threads_mod, "estimate_tokens", lambda messages, tools=None: 9000)
        assert clamp_output_tokens([], None, 8000, 16384) == 1
