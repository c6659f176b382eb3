"""Shared fixtures: an isolated tool directory and in-memory collaborators."""

import io

import pytest

from consult.state import SessionRecord


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    """Keep every test away from the real tool directory, config and API key."""
    home = tmp_path / "tool"
    home.mkdir()
    monkeypatch.setenv("CONSULT_HOME", str(home))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    # setenv first so that a key loaded from .env is removed again on teardown
    monkeypatch.setenv("OPENAI_API_KEY", "placeholder")
    monkeypatch.delenv("OPENAI_API_KEY")
    return home


@pytest.fixture
def tool_home(_isolated_env):
    return _isolated_env


class TTYInput(io.StringIO):
    """Stand-in for an interactive terminal on stdin."""

    def isatty(self):
        return True


class PipedInput(io.StringIO):
    def isatty(self):
        return False


class FakeStore:
    def __init__(self, record=None):
        self.record = record or SessionRecord()
        self.saved: list[SessionRecord] = []

    def load(self):
        return self.record

    def save(self, record):
        self.saved.append(record)
        self.record = record


class FakeThread:
    def __init__(self, service, thread_id, options):
        self.service = service
        self.id = thread_id
        self.options = options

    def run(self, prompt):
        self.service.prompts.append(prompt)
        if self.service.error is not None:
            raise self.service.error
        return self.service.result


class FakeService:
    """Thread service that records calls and returns a canned result."""

    def __init__(self, result="fake answer", error=None):
        self.result = result
        self.error = error
        self.started: list = []
        self.resumed: list = []
        self.prompts: list[str] = []
        self._next = 0

    def start_thread(self, options=None):
        self._next += 1
        self.started.append(options)
        return FakeThread(self, f"thread-{self._next}", options)

    def resume_thread(self, thread_id, options=None):
        self.resumed.append((thread_id, options))
        return FakeThread(self, thread_id, options)
