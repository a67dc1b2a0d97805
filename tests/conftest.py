import datetime as dt
import os
import sys

import pytest

ROOT_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

import jiratrack as jt  # noqa: E402


UTC = dt.timezone.utc


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: dt.datetime):
        self.now = start

    def __call__(self) -> dt.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + dt.timedelta(seconds=seconds)


class FakeTracker:
    """In-memory stand-in for JiraClient recording every call."""

    def __init__(self, issues=None):
        self.issues = list(issues or [])
        self.by_key = {}
        self.search_calls = []
        self.get_calls = []
        self.log_calls = []
        self.assign_calls = []
        self.search_error = None
        self.get_error = None
        self.log_error = None
        self.assign_error = None

    def search_open_sprint_issues(self, project):
        self.search_calls.append(project)
        if self.search_error is not None:
            raise self.search_error
        return list(self.issues)

    def get_issue(self, key):
        self.get_calls.append(key)
        if self.get_error is not None:
            raise self.get_error
        if key not in self.by_key:
            raise jt.NotFoundError(f"{key} not found")
        return self.by_key[key]

    def log_time(self, key, started_at, ended_at):
        self.log_calls.append((key, started_at, ended_at))
        if self.log_error is not None:
            raise self.log_error

    def assign_to_current_user(self, key):
        self.assign_calls.append(key)
        if self.assign_error is not None:
            raise self.assign_error


@pytest.fixture
def clock():
    return FakeClock(dt.datetime(2024, 1, 10, 9, 0, 0, tzinfo=UTC))


@pytest.fixture
def sample_issues():
    return [
        jt.Issue(id="10001", key="IMG-1", title="Fix login bug", time_spent="2h", assignee="Alice"),
        jt.Issue(id="10002", key="IMG-2", title="Write release notes"),
        jt.Issue(id="10003", key="IMG-3", title="Refactor logging setup", time_spent="30m", assignee="Bob"),
    ]


@pytest.fixture
def tracker(sample_issues):
    return FakeTracker(sample_issues)


@pytest.fixture
def state_path(tmp_path):
    """Return a state file path inside a directory that does not exist yet."""
    return tmp_path / "share" / "state.json"


@pytest.fixture
def store(state_path):
    return jt.StateStore(str(state_path))


@pytest.fixture
def copied():
    return []


@pytest.fixture
def controller(tracker, store, clock, copied):
    ctl = jt.SessionController(tracker, store, "IMG", clock=clock, clipboard=copied.append)
    ctl.startup()
    return ctl
