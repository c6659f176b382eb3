"""One consultation: pick the thread, send the prompt, record the outcome."""

import json
from dataclasses import dataclass
from datetime import datetime, timezone

from . import fmt
from .config import DEFAULT_TOPIC
from .inputs import Action, Request
from .report import ServiceError
from .state import SessionRecord
from .threads import ThreadOptions


@dataclass
class Result:
    """Outcome of a successful run_request() call."""

    thread_id: str
    response: str
    is_new_thread: bool
    record: SessionRecord


@dataclass
class DecodedResponse:
    kind: str  # "text", "final_response" or "serialized"
    text: str


def decode_response(result) -> DecodedResponse:
    """Normalize whatever a thread run returned into response text.

    Plain strings pass through, anything carrying a final response (attribute
    or mapping key) yields that, and everything else is serialized as JSON.
    A final response that is not itself a string is serialized on its own.
    """
    if isinstance(result, str):
        return DecodedResponse("text", result)

    if isinstance(result, dict):
        for key in ("final_response", "finalResponse"):
            if key in result:
                return DecodedResponse("final_response", _as_text(result[key]))
    elif hasattr(result, "final_response"):
        return DecodedResponse("final_response", _as_text(result.final_response))

    return DecodedResponse("serialized", _as_text(result))


def _as_text(value) -> str:
    return value if isinstance(value, str) else json.dumps(value, default=str)


def build_prompt(request: Request) -> str:
    if request.context:
        return f"{request.context}\n\n{request.prompt}"
    return request.prompt


def run_request(
    request: Request,
    store,
    service,
    *,
    default_topic: str = DEFAULT_TOPIC,
    now: datetime | None = None,
    verbose: bool = False,
) -> Result:
    """Send a validated request to the thread service and persist the session.

    ``store`` needs load()/save(); ``service`` needs start_thread() and
    resume_thread(). A continue with no stored thread starts a new one. The
    record is saved only after the service answers; any failure raised while
    talking to it comes back as ServiceError and leaves the store untouched.
    """
    previous = store.load()

    working_directory = request.working_directory or previous.working_directory
    options = ThreadOptions(working_directory=working_directory)
    resume = request.action is Action.CONTINUE and bool(previous.thread_id)

    try:
        if resume:
            thread = service.resume_thread(previous.thread_id, options)
        else:
            thread = service.start_thread(options)
        message_count = previous.message_count + 1 if resume else 1
        if verbose:
            fmt.thread_banner(thread.id, resumed=resume, message_count=message_count)
            if working_directory:
                fmt.note(f"Codebase access: {working_directory}")
        raw = thread.run(build_prompt(request))
    except Exception as e:
        raise ServiceError(f"Service error: {e}") from e

    decoded = decode_response(raw)
    if verbose and decoded.kind == "serialized":
        fmt.warn("service returned no text response, serializing the raw result")

    record = SessionRecord(
        thread_id=thread.id,
        topic=request.topic or previous.topic or default_topic,
        last_used=(now or datetime.now(timezone.utc)).isoformat(),
        message_count=message_count,
        working_directory=working_directory,
    )
    store.save(record)

    return Result(
        thread_id=thread.id,
        response=decoded.text,
        is_new_thread=not resume,
        record=record,
    )
