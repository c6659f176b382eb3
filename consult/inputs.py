"""Request resolution: locate, parse and validate the one request for this run.

The raw JSON comes from the first available source, in order: --input-file,
piped stdin, then positional words. A prompt file (--prompt-file, or the
payload's promptFile) replaces the prompt after parsing.
"""

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .report import InputError

MAX_PREVIEW_CHARS = 200

NO_INPUT_MESSAGE = (
    "No input provided. Use --input-file, pipe JSON to stdin, "
    "or pass prompt as argument."
)


class Action(Enum):
    NEW = "new"
    CONTINUE = "continue"


@dataclass
class Request:
    action: Action
    prompt: str
    context: str | None = None
    topic: str | None = None
    working_directory: str | None = None
    prompt_file: str | None = None


# --- Sources ---


class InputFileSource:
    """JSON text from an explicit input file."""

    def __init__(self, path: str | None):
        self.path = path

    def read(self) -> str | None:
        if not self.path:
            return None
        try:
            return Path(self.path).read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise InputError(f'Failed to read input file "{self.path}": {e}') from e


class StdinSource:
    """JSON text piped into the process.

    Interactive terminals are never read. An empty pipe counts as no input so
    that positional words still work when a caller leaves stdin attached.
    """

    def __init__(self, stream):
        self.stream = stream

    def read(self) -> str | None:
        if self.stream is None or self.stream.isatty():
            return None
        text = self.stream.read()
        if not text.strip():
            return None
        return text


class ArgvSource:
    """Positional words, synthesized into a new-thread request."""

    def __init__(self, words: list[str] | None):
        self.words = words or []

    def read(self) -> str | None:
        if not self.words or self.words[0].startswith("--"):
            return None
        return json.dumps({"action": Action.NEW.value, "prompt": " ".join(self.words)})


def read_payload(sources) -> str:
    """Return the text of the first source that has something to offer."""
    for source in sources:
        text = source.read()
        if text is not None:
            return text
    raise InputError(NO_INPUT_MESSAGE)


# --- Parsing and validation ---


def parse_payload(text: str) -> dict:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        preview = json.dumps(text[:MAX_PREVIEW_CHARS], ensure_ascii=False)
        raise InputError(f"Invalid JSON input: {e}. Preview: {preview}") from e
    if not isinstance(payload, dict):
        raise InputError("Input must be a JSON object")
    return payload


def _read_prompt_file(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise InputError(f'Failed to read prompt file "{path}": {e}') from e


def apply_prompt_file(payload: dict, prompt_file: str | None = None) -> dict:
    """Replace the payload's prompt with a file's contents, if one is named.

    The CLI flag wins over the payload's own promptFile field. Mutates and
    returns payload.
    """
    if prompt_file:
        payload["prompt"] = _read_prompt_file(prompt_file)
        payload["promptFile"] = prompt_file
    elif payload.get("promptFile"):
        path = payload["promptFile"]
        if not isinstance(path, str):
            raise InputError("'promptFile' must be a string")
        payload["prompt"] = _read_prompt_file(path)
    return payload


def _optional_text(payload: dict, key: str) -> str | None:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise InputError(f"'{key}' must be a string, got {type(value).__name__}")
    return value


def validate_payload(payload: dict) -> Request:
    action_value = payload.get("action")
    valid_actions = {a.value for a in Action}
    if not isinstance(action_value, str) or action_value not in valid_actions:
        shown = action_value if isinstance(action_value, str) else json.dumps(action_value)
        raise InputError(f'Invalid action "{shown}". Must be "new" or "continue".')

    prompt = payload.get("prompt")
    if not prompt:
        raise InputError("Missing 'prompt' field in input")
    if not isinstance(prompt, str):
        raise InputError(f"'prompt' must be a string, got {type(prompt).__name__}")

    return Request(
        action=Action(action_value),
        prompt=prompt,
        context=_optional_text(payload, "context"),
        topic=_optional_text(payload, "topic"),
        working_directory=_optional_text(payload, "workingDirectory"),
        prompt_file=_optional_text(payload, "promptFile"),
    )


def resolve_request(sources, prompt_file: str | None = None) -> Request:
    """Run the whole resolution pipeline and return a validated Request."""
    payload = parse_payload(read_payload(sources))
    apply_prompt_file(payload, prompt_file)
    return validate_payload(payload)


def build_sources(*, input_file: str | None, stdin, words: list[str] | None) -> list:
    return [InputFileSource(input_file), StdinSource(stdin), ArgvSource(words)]


def validation_report(request: Request) -> dict:
    return {
        "valid": True,
        "action": request.action.value,
        "promptLength": len(request.prompt),
        "hasContext": bool(request.context),
        "hasTopic": bool(request.topic),
        "hasWorkingDirectory": bool(request.working_directory),
    }
