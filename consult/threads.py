"""Conversation threads backed by LiteLLM, persisted as JSON transcripts.

A thread service exposes start_thread(options) and resume_thread(thread_id,
options), both returning a handle with an ``id`` and ``run(prompt)``. The
orchestration in session.py depends only on that shape.
"""

import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path

import tiktoken

from . import fmt
from .report import ServiceError, ThreadNotFoundError
from .tools import TOOLS, dispatch

MAX_ARG_LOG = 1000

DEFAULT_SYSTEM_PROMPT = (
    "You are a senior engineer giving a second opinion to another coding "
    "assistant. Be direct and specific: point out bugs, risks and better "
    "alternatives, and say plainly when something looks fine."
)

CODEBASE_PROMPT = (
    "You have read-only access to the codebase at {path} through the "
    "read_file, list_files and grep tools. Paths are relative to that "
    "directory. Look at the code before making claims about it."
)


@dataclass
class ThreadOptions:
    working_directory: str | None = None


@dataclass
class RunResult:
    final_response: str
    finish_reason: str
    turns: int


@lru_cache(maxsize=1)
def _encoder():
    return tiktoken.get_encoding("cl100k_base")


def estimate_tokens(messages: list[dict], tools: list | None = None) -> int:
    """Count tokens across all messages using tiktoken."""
    enc = _encoder()
    total = 0
    for m in messages:
        content = m.get("content") or ""
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function", {})
            content += fn.get("name", "") + (fn.get("arguments") or "")
        total += len(enc.encode(content))
    if tools:
        total += len(enc.encode(json.dumps(tools)))
    # Per-message overhead (role, separators), ~4 tokens each
    return total + 4 * len(messages)


def group_into_turns(messages: list[dict]) -> list[list[dict]]:
    """Group messages into atomic turns.

    An assistant message with tool_calls forms one turn together with the
    tool results answering it; every other message is a turn on its own.
    """
    turns = []
    i = 0
    while i < len(messages):
        msg = messages[i]
        if msg.get("role") == "assistant" and msg.get("tool_calls"):
            tc_ids = {tc["id"] for tc in msg["tool_calls"]}
            turn = [msg]
            j = i + 1
            while (
                j < len(messages)
                and messages[j].get("role") == "tool"
                and messages[j].get("tool_call_id") in tc_ids
            ):
                turn.append(messages[j])
                j += 1
            turns.append(turn)
            i = j
        else:
            turns.append([msg])
            i += 1
    return turns


EARLIER_MARKER = "[earlier conversation was removed to fit the context window]"
TOOL_ROUNDS_MARKER = (
    "[older tool calls and results were removed to fit the context window]"
)


def _flatten(turns: list[list[dict]]) -> list[dict]:
    return [msg for turn in turns for msg in turn]


def drop_earlier_turns(history: list[dict], keep: int) -> list[dict]:
    """Keep the newest ``keep`` turns of earlier exchanges behind a marker.

    ``history`` is everything before the prompt being answered. A marker left
    by an earlier trim is replaced, never stacked.
    """
    turns = [
        t for t in group_into_turns(history) if t[0].get("content") != EARLIER_MARKER
    ]
    kept = turns[len(turns) - keep :] if keep > 0 else []
    return [{"role": "user", "content": EARLIER_MARKER}] + _flatten(kept)


def drop_middle_turns(current: list[dict], keep_tail: int = 3) -> list[dict]:
    """Drop tool rounds between the prompt and the last keep_tail turns.

    ``current`` starts with the prompt being answered. The leading user
    block, which holds that prompt, always survives.
    """
    turns = group_into_turns(current)
    leading = []
    for turn in turns:
        if turn[0].get("role") != "user":
            break
        leading.append(turn)
    if len(leading) + keep_tail >= len(turns):
        return list(current)
    leading = [t for t in leading if t[0].get("content") != TOOL_ROUNDS_MARKER]
    marker = [{"role": "user", "content": TOOL_ROUNDS_MARKER}]
    return _flatten(leading) + marker + _flatten(turns[-keep_tail:])


def clamp_output_tokens(
    messages: list[dict],
    tools: list | None,
    context_length: int | None,
    requested: int,
) -> int:
    """Shrink the reply allowance so prompt plus reply fit the context window."""
    if context_length is None:
        return requested
    available = context_length - estimate_tokens(messages, tools)
    if available < 1:
        return 1
    return min(requested, available)


def _message_to_dict(msg) -> dict:
    """Convert a LiteLLM response message into a plain, JSON-safe dict."""
    out: dict = {"role": "assistant", "content": getattr(msg, "content", None)}
    tool_calls = getattr(msg, "tool_calls", None)
    if tool_calls:
        out["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.function.name,
                    "arguments": tc.function.arguments,
                },
            }
            for tc in tool_calls
        ]
    return out


def call_llm(
    model: str,
    messages: list[dict],
    *,
    tools: list | None,
    max_output_tokens: int,
    temperature: float | None,
    api_key: str | None,
    base_url: str | None,
    verbose: bool = False,
):
    """Call LiteLLM once. Returns (message, finish_reason)."""
    import litellm

    litellm.suppress_debug_info = True

    completion_kwargs = dict(
        model=model,
        messages=messages,
        max_tokens=max_output_tokens,
        api_key=api_key,
    )
    if base_url:
        completion_kwargs["api_base"] = base_url
    if tools:
        completion_kwargs["tools"] = tools
        completion_kwargs["tool_choice"] = "auto"
    if temperature is not None:
        completion_kwargs["temperature"] = temperature

    if verbose:
        fmt.note(f"Calling model {model} with max_tokens={max_output_tokens}")

    try:
        response = litellm.completion(**completion_kwargs)
    except Exception as e:
        raise ServiceError(f"LLM call failed: {e}") from e

    choice = response.choices[0]
    return choice.message, choice.finish_reason


class LLMThread:
    """One conversation thread. Each run() appends to the persisted transcript."""

    def __init__(
        self,
        service: "LLMThreads",
        thread_id: str,
        messages: list[dict],
        options: ThreadOptions,
    ):
        self.service = service
        self.id = thread_id
        self.messages = messages
        self.options = options

    def _system_messages(self) -> list[dict]:
        content = self.service.system_prompt or DEFAULT_SYSTEM_PROMPT
        if self.options.working_directory:
            content += "\n\n" + CODEBASE_PROMPT.format(
                path=self.options.working_directory
            )
        return [{"role": "system", "content": content}]

    def _prompt_budget(self) -> int | None:
        window = self.service.max_context_tokens
        if window is None:
            return None
        # The reply reserve never takes more than half the window
        return window - min(self.service.max_output_tokens, window // 2)

    def _fit_context(
        self, messages: list[dict], question: dict, tools: list | None
    ) -> list[dict]:
        """Trim the transcript to the prompt budget, never dropping ``question``.

        Earlier exchanges go first, oldest turn first. If the run's own tool
        rounds still overflow, the ones between the question and the last
        three turns are dropped.
        """
        budget = self._prompt_budget()
        if budget is None:
            return messages
        system = self._system_messages()

        def fits(candidate):
            return estimate_tokens(system + candidate, tools) <= budget

        if fits(messages):
            return messages

        start = next(i for i, m in enumerate(messages) if m is question)
        history, current = messages[:start], messages[start:]
        trimmed = None
        if history:
            for keep in range(len(group_into_turns(history)) - 1, -1, -1):
                candidate = drop_earlier_turns(history, keep) + current
                if fits(candidate):
                    trimmed = candidate
                    break
            else:
                history = drop_earlier_turns(history, 0)
        if trimmed is None:
            trimmed = history + drop_middle_turns(current)

        if self.service.verbose:
            fmt.warn("thread exceeds the context budget, dropping older turns")
            fmt.token_count(
                "Context after trimming", estimate_tokens(system + trimmed, tools)
            )
        return trimmed

    def _handle_tool_call(self, tool_call: dict) -> dict:
        name = tool_call["function"]["name"]
        raw_args = tool_call["function"]["arguments"]
        verbose = self.service.verbose

        try:
            parsed_args = json.loads(raw_args)
        except (json.JSONDecodeError, TypeError) as e:
            result = f"error: invalid JSON in tool arguments: {e}"
            if verbose:
                fmt.tool_finished(name, 0.0, result)
            return {"role": "tool", "tool_call_id": tool_call["id"], "content": result}

        if verbose:
            pretty = json.dumps(parsed_args, indent=2)
            if len(pretty) > MAX_ARG_LOG:
                pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
            fmt.tool_started(name, pretty)

        t0 = time.monotonic()
        try:
            result = dispatch(name, parsed_args, self.options.working_directory)
        except KeyError as e:
            result = f"error: {e}"
        except (TypeError, ValueError) as e:
            result = f"error: bad arguments for {name}: {e}"
        elapsed = time.monotonic() - t0

        if verbose:
            fmt.tool_finished(name, elapsed, result)
        return {"role": "tool", "tool_call_id": tool_call["id"], "content": result}

    def run(self, prompt: str) -> RunResult:
        """Send a prompt and return the model's final answer.

        With a working directory the model may call codebase tools first; the
        last permitted turn is made without tools so that it has to answer.
        The transcript is saved only once an answer has arrived.
        """
        service = self.service
        question = {"role": "user", "content": prompt}
        messages = list(self.messages) + [question]
        can_use_tools = bool(self.options.working_directory)

        turns = 0
        while True:
            turns += 1
            tools = TOOLS if can_use_tools and turns < service.max_turns else None
            messages = self._fit_context(messages, question, tools)
            outgoing = self._system_messages() + messages

            t0 = time.monotonic()
            msg, finish_reason = call_llm(
                service.model,
                outgoing,
                tools=tools,
                max_output_tokens=clamp_output_tokens(
                    outgoing, tools, service.max_context_tokens, service.max_output_tokens
                ),
                temperature=service.temperature,
                api_key=service.api_key,
                base_url=service.base_url,
                verbose=service.verbose,
            )
            if service.verbose:
                fmt.model_reply(turns, time.monotonic() - t0, finish_reason)

            reply = _message_to_dict(msg)
            messages.append(reply)
            if not reply.get("tool_calls"):
                break
            if turns >= service.max_turns:
                # Unanswered tool calls would make the transcript unusable on resume.
                del reply["tool_calls"]
                break
            for tool_call in reply["tool_calls"]:
                messages.append(self._handle_tool_call(tool_call))

        if service.verbose:
            fmt.answered(turns)

        self.messages = messages
        service.save_transcript(self)
        return RunResult(
            final_response=reply.get("content") or "",
            finish_reason=finish_reason,
            turns=turns,
        )


class LLMThreads:
    """Thread service that keeps one JSON transcript per thread in threads_dir."""

    def __init__(
        self,
        threads_dir: str | Path,
        *,
        model: str,
        api_key: str | None = None,
        base_url: str | None = None,
        max_output_tokens: int = 16384,
        max_context_tokens: int | None = None,
        temperature: float | None = None,
        max_turns: int = 25,
        system_prompt: str | None = None,
        verbose: bool = False,
    ):
        self.threads_dir = Path(threads_dir)
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.temperature = temperature
        self.max_turns = max_turns
        self.system_prompt = system_prompt
        self.verbose = verbose

    def transcript_path(self, thread_id: str) -> Path:
        # Thread ids come from state.json, which is hand-editable.
        if not thread_id or any(sep in thread_id for sep in ("/", "\\", "..")):
            raise ThreadNotFoundError(f"invalid thread id {thread_id!r}")
        return self.threads_dir / f"{thread_id}.json"

    def start_thread(self, options: ThreadOptions | None = None) -> LLMThread:
        return LLMThread(self, str(uuid.uuid4()), [], options or ThreadOptions())

    def resume_thread(
        self, thread_id: str, options: ThreadOptions | None = None
    ) -> LLMThread:
        path = self.transcript_path(thread_id)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise ThreadNotFoundError(
                f"thread {thread_id} not found in {self.threads_dir}"
            )
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ServiceError(
                f"cannot read transcript for thread {thread_id}: {e}"
            ) from e
        messages = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(messages, list):
            raise ServiceError(f"transcript for thread {thread_id} has no messages")
        return LLMThread(self, thread_id, messages, options or ThreadOptions())

    def save_transcript(self, thread: LLMThread) -> None:
        path = self.transcript_path(thread.id)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "id": thread.id,
            "model": self.model,
            "updated": datetime.now(timezone.utc).isoformat(),
            "messages": thread.messages,
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
