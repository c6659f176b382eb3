"""consult: ask an external reasoning model for a second opinion, one thread at a time."""

from .inputs import Action, Request
from .report import ConfigError, ConsultError, InputError, ServiceError
from .session import Result, run_request
from .state import SessionRecord, SessionStore
from .threads import LLMThreads, ThreadOptions

__all__ = [
    "Action",
    "ConfigError",
    "ConsultError",
    "InputError",
    "LLMThreads",
    "Request",
    "Result",
    "ServiceError",
    "SessionRecord",
    "SessionStore",
    "ThreadOptions",
    "run_request",
]
