"""The single persisted session record that links separate runs together."""

import json
from dataclasses import dataclass
from pathlib import Path

from .report import ConsultError

# JSON key -> (attribute, expected type)
_FIELDS: dict[str, tuple[str, type]] = {
    "threadId": ("thread_id", str),
    "topic": ("topic", str),
    "lastUsed": ("last_used", str),
    "messageCount": ("message_count", int),
    "workingDirectory": ("working_directory", str),
}


@dataclass
class SessionRecord:
    thread_id: str | None = None
    topic: str | None = None
    last_used: str | None = None
    message_count: int = 0
    working_directory: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "SessionRecord":
        """Build a record from its JSON form, dropping fields of the wrong type."""
        kwargs = {}
        for key, (attr, expected) in _FIELDS.items():
            value = data.get(key)
            if isinstance(value, bool) or not isinstance(value, expected):
                continue
            kwargs[attr] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        data = {}
        for key, (attr, _) in _FIELDS.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data


class SessionStore:
    """Reads and overwrites one JSON session record on disk.

    There is no locking: two concurrent runs both save, and the last one wins.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> SessionRecord:
        """Return the stored record, or an empty one if it is missing or unreadable."""
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            return SessionRecord()
        if not isinstance(data, dict):
            return SessionRecord()
        return SessionRecord.from_dict(data)

    def save(self, record: SessionRecord) -> None:
        """Overwrite the stored record. Fields are replaced, never merged."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "w", encoding="utf-8") as f:
                json.dump(record.to_dict(), f, indent=2)
                f.write("\n")
        except OSError as e:
            raise ConsultError(f'Failed to write session state "{self.path}": {e}') from e
