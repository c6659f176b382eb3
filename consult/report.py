"""Error types and the JSON documents written to stdout for the caller."""

import json
import sys


class ConsultError(Exception):
    """Raised for failures that are reported to the caller as a JSON error."""


class InputError(ConsultError):
    """Raised when no usable request can be resolved from the inputs."""


class ConfigError(ConsultError):
    """Raised for invalid configuration (bad config file, missing API key, etc.)."""


class ServiceError(ConsultError):
    """Raised when the reasoning service or its transport fails."""


class ThreadNotFoundError(ServiceError):
    """Raised when resuming a thread whose transcript does not exist."""


def success_payload(thread_id: str, response: str) -> dict:
    return {
        "success": True,
        "threadId": thread_id,
        "response": response,
        "canContinue": True,
    }


def error_payload(message: str) -> dict:
    return {"success": False, "error": message, "canContinue": False}


def emit(payload: dict, stream=None) -> None:
    """Write a payload as pretty JSON, one document per invocation."""
    stream = stream if stream is not None else sys.stdout
    stream.write(json.dumps(payload, indent=2, ensure_ascii=False))
    stream.write("\n")
    stream.flush()
