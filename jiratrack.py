#!/usr/bin/env python3
# jiratrack: Terminal Jira sprint browser with a single worklog timer
#
# Hotkeys
#   <type>     fuzzy-filter the sprint issues by title
#   Backspace  delete the last search character
#   Up/Down    move selection
#   Enter      activate the selected issue (a running timer is submitted first)
#   Ctrl-S     stop the timer and submit a worklog (intervals under a minute are dropped)
#   Ctrl-D     discard the running timer without logging anything
#   Ctrl-Y     copy "[KEY] title" of the active issue to the clipboard
#   Ctrl-A     assign the selected issue to yourself
#   Ctrl-R     reload the sprint issue list
#   Esc        quit (a running timer keeps running and is restored on next start)
#
# Config (~/.config/jiratrack/config.yml)
#   atlassian_url: https://example.atlassian.net
#   user_email: me@example.com
#   project: IMG
#   user_api_token: ...        # optional, see Environment
#
# Notes
# - Only issues in open sprints of the configured project that are not
#   done/archived are listed.
# - The active timer lives in ~/.local/share/jiratrack/state.json. A state file
#   that does not parse is reported and left untouched; fix or remove it by hand.
# - A failed worklog is reported in the status line with its start and duration
#   and is not retried.
#
# Environment
# - JIRA_API_TOKEN (Atlassian API token; also read from .env as TOKEN or JIRA_API_TOKEN)

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import os
import subprocess
import sys
import tempfile
import unicodedata
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import requests
import yaml
from prompt_toolkit import Application
from prompt_toolkit.application.current import get_app
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from prompt_toolkit.layout import HSplit, Layout, Window
from prompt_toolkit.layout.controls import FormattedTextControl
from prompt_toolkit.layout.dimension import Dimension
from prompt_toolkit.styles import Style
from prompt_toolkit.utils import get_cwidth
from prompt_toolkit.widgets import Frame


logger = logging.getLogger('jiratrack')

DEFAULT_CONFIG_PATH = os.path.expanduser("~/.config/jiratrack/config.yml")
DEFAULT_STATE_PATH = os.path.expanduser("~/.local/share/jiratrack/state.json")
DEFAULT_LOG_PATH = os.path.expanduser("~/.local/share/jiratrack/jiratrack.log")

MIN_WORKLOG_SECONDS = 60


# -----------------------------
# Config
# -----------------------------
@dataclass
class Config:
    atlassian_url: str
    user_email: str
    project: str
    user_api_token: str = ""


REQUIRED_CONFIG_KEYS = ("atlassian_url", "user_email", "project")


def load_config(path: str) -> Config:
    if not os.path.isfile(path):
        raise ValueError(
            f"Config file not found: {path}. "
            f"Expected a YAML file with {', '.join(REQUIRED_CONFIG_KEYS)}."
        )
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError("Config: expected a mapping at the top level.")
    missing = [k for k in REQUIRED_CONFIG_KEYS if not str(raw.get(k) or "").strip()]
    if missing:
        raise ValueError(f"Config: missing required key(s): {', '.join(missing)}")
    url = str(raw["atlassian_url"]).strip().rstrip("/")
    if not url.startswith(("http://", "https://")):
        raise ValueError(f"Config: 'atlassian_url' must start with http:// or https://: {url}")
    return Config(
        atlassian_url=url,
        user_email=str(raw["user_email"]).strip(),
        project=str(raw["project"]).strip(),
        user_api_token=str(raw.get("user_api_token") or "").strip(),
    )


def load_dotenv_token() -> Optional[str]:
    """Load TOKEN or JIRA_API_TOKEN from a .env file (current dir or script dir) if present."""
    candidates = [os.getcwd(), os.path.dirname(os.path.abspath(__file__))]
    for base in candidates:
        path = os.path.join(base, ".env")
        if not os.path.isfile(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.strip()
                    if not line or line.startswith('#') or '=' not in line:
                        continue
                    k, v = line.split('=', 1)
                    k = k.strip()
                    v = v.strip().strip('"').strip("'")
                    if k in ("TOKEN", "JIRA_API_TOKEN") and v:
                        return v
        except OSError:
            logger.warning("Unable to read %s", path, exc_info=True)
            continue
    return None


def resolve_api_token(cfg: Config) -> Optional[str]:
    # Precedence: env var, config file, .env
    return os.environ.get("JIRA_API_TOKEN") or cfg.user_api_token or load_dotenv_token()


# -----------------------------
# Errors
# -----------------------------
class TrackerError(Exception):
    """Base class for failures talking to the issue tracker."""


class NetworkError(TrackerError):
    """Connection failure, timeout or a server-side (5xx) error."""


class AuthError(TrackerError):
    """Credentials were rejected. The session cannot continue."""


class MalformedResponseError(TrackerError):
    """The tracker answered with a payload we cannot interpret."""


class RejectedError(TrackerError):
    """The tracker refused a write (worklog, assignment)."""


class NotFoundError(TrackerError):
    """The requested issue does not exist or is not visible."""


class CorruptStateError(Exception):
    """The persisted session record is unreadable or violates its invariant."""


class ClipboardUnavailableError(Exception):
    """No working clipboard tool was found."""


# -----------------------------
# Issues + Jira client
# -----------------------------
@dataclass(frozen=True)
class Issue:
    id: str
    key: str
    title: str
    time_spent: str = "0h"
    assignee: str = ""

    def summary_line(self) -> str:
        return f"[{self.key}] {self.title}"


JIRA_ISSUE_FIELDS = "id,summary,key,timetracking,assignee"
SPRINT_JQL = 'sprint in openSprints() AND project = "{project}" AND status != done AND status != archived'
REQUEST_TIMEOUT = 30


def _session(email: str, api_token: str) -> requests.Session:
    s = requests.Session()
    s.auth = (email, api_token)
    s.headers["Accept"] = "application/json"
    return s


def _format_jira_timestamp(ts: dt.datetime) -> str:
    # Jira wants millisecond precision and a +hhmm offset: 2024-01-10T09:00:00.000+0000
    if ts.tzinfo is None:
        ts = ts.astimezone()
    return f"{ts.strftime('%Y-%m-%dT%H:%M:%S')}.{ts.microsecond // 1000:03d}{ts.strftime('%z')}"


def _error_detail(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return (resp.text or "")[:200]
    if isinstance(data, dict):
        messages = list(data.get("errorMessages") or [])
        errors = data.get("errors") or {}
        if isinstance(errors, dict):
            messages.extend(f"{k}: {v}" for k, v in errors.items())
        if messages:
            return "; ".join(str(m) for m in messages)
    return (resp.text or "")[:200]


def parse_issue(raw: object) -> Issue:
    if not isinstance(raw, dict) or not isinstance(raw.get("fields"), dict):
        raise MalformedResponseError(f"Issue payload is not an object with fields: {str(raw)[:120]}")
    fields = raw["fields"]
    issue_id, key, summary = raw.get("id"), raw.get("key"), fields.get("summary")
    for name, value in (("id", issue_id), ("key", key), ("summary", summary)):
        if not isinstance(value, str):
            raise MalformedResponseError(f"Issue payload has no string '{name}'")
    timetracking = fields.get("timetracking")
    assignee = fields.get("assignee")
    time_spent = timetracking.get("timeSpent") if isinstance(timetracking, dict) else None
    assignee_name = assignee.get("displayName") if isinstance(assignee, dict) else None
    return Issue(
        id=issue_id,
        key=key,
        title=summary,
        time_spent=str(time_spent or "0h"),
        assignee=str(assignee_name or ""),
    )


class JiraClient:
    """Blocking Jira Cloud REST v3 client covering what the timer needs.

    Every failure is raised as a TrackerError subclass:

    - connection problems, timeouts and HTTP 5xx -> NetworkError
    - HTTP 401/403 -> AuthError
    - HTTP 404 -> NotFoundError for reads, RejectedError for writes
    - any other HTTP 4xx -> RejectedError
    - bodies that are not the expected JSON -> MalformedResponseError

    Nothing is retried.
    """

    def __init__(
        self,
        base_url: str,
        email: str,
        api_token: str,
        session: Optional[requests.Session] = None,
        timeout: float = REQUEST_TIMEOUT,
        max_pages: int = 10,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session if session is not None else _session(email, api_token)
        self.timeout = timeout
        self.max_pages = max_pages
        self._account_id: Optional[str] = None

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, object]] = None,
        not_found: type = NotFoundError,
    ) -> requests.Response:
        url = f"{self.base_url}{endpoint}"
        try:
            resp = self.session.request(method, url, params=params, json=payload, timeout=self.timeout)
        except requests.exceptions.RequestException as exc:
            logger.warning("%s %s failed: %s", method, endpoint, exc)
            raise NetworkError(f"{method} {endpoint} failed: {exc}") from exc
        status = resp.status_code
        logger.debug("%s %s -> HTTP %s", method, endpoint, status)
        if status in (401, 403):
            raise AuthError(f"Jira rejected the credentials (HTTP {status})")
        if status == 404:
            raise not_found(f"{method} {endpoint}: not found ({_error_detail(resp)})")
        if status >= 500:
            raise NetworkError(f"Jira server error on {method} {endpoint} (HTTP {status})")
        if status >= 400:
            raise RejectedError(f"Jira rejected {method} {endpoint} (HTTP {status}): {_error_detail(resp)}")
        return resp

    def _json(self, resp: requests.Response) -> object:
        try:
            return resp.json()
        except ValueError as exc:
            raise MalformedResponseError(f"Jira returned a non-JSON body: {(resp.text or '')[:120]!r}") from exc

    def search_open_sprint_issues(self, project: str) -> List[Issue]:
        jql = SPRINT_JQL.format(project=project.replace('"', '\\"'))
        params: Dict[str, str] = {"jql": jql, "fields": JIRA_ISSUE_FIELDS}
        issues: List[Issue] = []
        pages = 0
        while pages < self.max_pages:
            data = self._json(self._request("GET", "/rest/api/3/search/jql", params=params))
            if not isinstance(data, dict) or not isinstance(data.get("issues"), list):
                raise MalformedResponseError("Search response has no 'issues' list")
            issues.extend(parse_issue(item) for item in data["issues"])
            pages += 1
            next_token = data.get("nextPageToken")
            if data.get("isLast") or not next_token:
                break
            params = dict(params, nextPageToken=str(next_token))
        else:
            logger.warning("Stopped after %d result pages for project %s", pages, project)
        return issues

    def get_issue(self, issue_key: str) -> Issue:
        resp = self._request("GET", f"/rest/api/3/issue/{issue_key}", params={"fields": JIRA_ISSUE_FIELDS})
        return parse_issue(self._json(resp))

    def log_time(self, issue_key: str, started_at: dt.datetime, ended_at: dt.datetime) -> None:
        seconds = int((ended_at - started_at).total_seconds())
        if seconds < MIN_WORKLOG_SECONDS:
            logger.info("Skipping worklog for %s: %ss is under a minute", issue_key, seconds)
            return
        payload = {"started": _format_jira_timestamp(started_at), "timeSpentSeconds": seconds}
        self._request("POST", f"/rest/api/3/issue/{issue_key}/worklog", payload=payload, not_found=RejectedError)
        logger.info("Logged %ss on %s (started %s)", seconds, issue_key, payload["started"])

    def current_account_id(self) -> str:
        if self._account_id is None:
            data = self._json(self._request("GET", "/rest/api/3/myself"))
            account_id = data.get("accountId") if isinstance(data, dict) else None
            if not isinstance(account_id, str) or not account_id:
                raise MalformedResponseError("Response from /myself has no accountId")
            self._account_id = account_id
        return self._account_id

    def assign_to_current_user(self, issue_key: str) -> None:
        account_id = self.current_account_id()
        self._request(
            "PUT",
            f"/rest/api/3/issue/{issue_key}/assignee",
            payload={"accountId": account_id},
            not_found=RejectedError,
        )
        logger.info("Assigned %s to account %s", issue_key, account_id)


# -----------------------------
# Fuzzy search
# -----------------------------
SCORE_MATCH = 16
BONUS_CONSECUTIVE = 12
BONUS_WORD_START = 8
BONUS_EXACT_CASE = 1
PENALTY_GAP = 2           # per skipped character between two hits
MAX_GAP_PENALTY = 6
MAX_LEADING_PENALTY = 3   # per character before the first hit, capped
_WORD_SEPARATORS = frozenset(" \t-_./\\:;,[](){}#'\"")


def _hit_score(query_char: str, target: str, j: int) -> int:
    score = SCORE_MATCH
    ch = target[j]
    if j == 0:
        score += BONUS_WORD_START
    else:
        before = target[j - 1]
        if before in _WORD_SEPARATORS or (ch.isupper() and before.islower()):
            score += BONUS_WORD_START
    if query_char == ch:
        score += BONUS_EXACT_CASE
    return score


def fuzzy_score(query: str, target: str) -> Optional[int]:
    """Score `query` as a case-insensitive subsequence of `target`.

    Returns None when the query characters do not all appear in order. The
    best alignment is chosen by dynamic programming over (query char, target
    position); since gap penalties are capped, each row only needs the three
    nearest predecessors plus a running maximum of everything further back.
    """
    if not query:
        return 0
    q = [c.lower() for c in query]
    t = [c.lower() for c in target]
    n = len(t)
    if len(q) > n:
        return None

    prev: List[Optional[int]] = [None] * n
    for j in range(n):
        if t[j] == q[0]:
            prev[j] = _hit_score(query[0], target, j) - min(j, MAX_LEADING_PENALTY)

    for i in range(1, len(q)):
        cur: List[Optional[int]] = [None] * n
        far_best: Optional[int] = None
        for j in range(n):
            k = j - 4
            if k >= 0 and prev[k] is not None and (far_best is None or prev[k] > far_best):
                far_best = prev[k]
            if t[j] != q[i]:
                continue
            best: Optional[int] = None
            options = (
                (j - 1, BONUS_CONSECUTIVE),
                (j - 2, -PENALTY_GAP),
                (j - 3, -2 * PENALTY_GAP),
            )
            for k2, adjust in options:
                if k2 >= 0 and prev[k2] is not None:
                    cand = prev[k2] + adjust
                    if best is None or cand > best:
                        best = cand
            if far_best is not None:
                cand = far_best - MAX_GAP_PENALTY
                if best is None or cand > best:
                    best = cand
            if best is not None:
                cur[j] = best + _hit_score(query[i], target, j)
        prev = cur

    scores = [s for s in prev if s is not None]
    return max(scores) if scores else None


def rank_issues(issues: Sequence[Issue], query: str) -> List[Issue]:
    """Filter issues whose title fuzzy-matches `query`, best match first.

    An empty query returns the issues untouched. Equal scores keep their input
    order.
    """
    if not query:
        return list(issues)
    scored: List[Tuple[int, Issue]] = []
    for issue in issues:
        score = fuzzy_score(query, issue.title)
        if score is not None:
            scored.append((score, issue))
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [issue for _, issue in scored]


# -----------------------------
# Session state
# -----------------------------
def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).astimezone()


@dataclass(frozen=True)
class WorklogRequest:
    issue_key: str
    started_at: dt.datetime
    ended_at: dt.datetime

    @property
    def seconds(self) -> int:
        return max(0, int((self.ended_at - self.started_at).total_seconds()))


@dataclass(frozen=True)
class StateRecord:
    active_issue_key: Optional[str] = None
    activated_at: Optional[dt.datetime] = None

    def __post_init__(self):
        if (self.active_issue_key is None) != (self.activated_at is None):
            raise CorruptStateError(
                "active_issue_key and activated_at must both be set or both be empty "
                f"(got {self.active_issue_key!r}, {self.activated_at!r})"
            )


class SessionState:
    """Which issue is being timed, and since when.

    Idle -> activate -> Active -> deactivate/discard -> Idle. Transitions never
    talk to the tracker; deactivate returns the worklog that should be
    submitted and leaves the submission to the caller.
    """

    def __init__(self, clock: Optional[Callable[[], dt.datetime]] = None):
        self._clock = clock or _now
        self.active_issue_key: Optional[str] = None
        self.activated_at: Optional[dt.datetime] = None

    @property
    def is_active(self) -> bool:
        return self.active_issue_key is not None

    def activate(self, issue_key: str) -> Optional[WorklogRequest]:
        """Start timing `issue_key`; returns the worklog flushed from the previous issue, if any."""
        if not issue_key:
            raise ValueError("Cannot activate an empty issue key")
        now = self._clock()
        flushed = self._stop(now) if self.is_active else None
        self.active_issue_key = issue_key
        self.activated_at = now
        logger.info("Activated %s at %s", issue_key, now.isoformat(timespec="seconds"))
        return flushed

    def deactivate(self) -> Optional[WorklogRequest]:
        if not self.is_active:
            return None
        return self._stop(self._clock())

    def _stop(self, now: dt.datetime) -> Optional[WorklogRequest]:
        request = WorklogRequest(self.active_issue_key, self.activated_at, now)
        self.active_issue_key = None
        self.activated_at = None
        if request.seconds < MIN_WORKLOG_SECONDS:
            logger.info("Dropped %ss on %s (under a minute)", request.seconds, request.issue_key)
            return None
        logger.info("Deactivated %s after %ss", request.issue_key, request.seconds)
        return request

    def discard(self) -> None:
        if self.is_active:
            logger.info("Discarded timer on %s", self.active_issue_key)
        self.active_issue_key = None
        self.activated_at = None

    def elapsed_now(self) -> Optional[dt.timedelta]:
        if self.activated_at is None:
            return None
        # Wall clock may have moved backwards since activation
        return max(dt.timedelta(0), self._clock() - self.activated_at)

    def to_record(self) -> StateRecord:
        return StateRecord(self.active_issue_key, self.activated_at)

    @classmethod
    def from_record(
        cls,
        record: Optional[StateRecord],
        clock: Optional[Callable[[], dt.datetime]] = None,
    ) -> "SessionState":
        state = cls(clock=clock)
        state.restore(record)
        return state

    def restore(self, record: Optional[StateRecord]) -> None:
        record = record or StateRecord()
        self.active_issue_key = record.active_issue_key
        self.activated_at = record.activated_at


# -----------------------------
# State store
# -----------------------------
def _parse_iso(s: str) -> Optional[dt.datetime]:
    try:
        return dt.datetime.fromisoformat(s)
    except ValueError:
        try:
            return dt.datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return None


def parse_state_record(data: object, source: str = "state") -> StateRecord:
    if not isinstance(data, dict):
        raise CorruptStateError(f"{source}: expected a JSON object, got {type(data).__name__}")
    key = data.get("active_issue_key")
    raw_ts = data.get("activated_at")
    if key is not None and (not isinstance(key, str) or not key):
        raise CorruptStateError(f"{source}: active_issue_key must be a non-empty string or null")
    activated_at = None
    if raw_ts is not None:
        if not isinstance(raw_ts, str):
            raise CorruptStateError(f"{source}: activated_at must be a timestamp string or null")
        activated_at = _parse_iso(raw_ts)
        if activated_at is None:
            raise CorruptStateError(f"{source}: activated_at is not an ISO-8601 timestamp: {raw_ts!r}")
        if activated_at.tzinfo is None:
            raise CorruptStateError(f"{source}: activated_at has no UTC offset: {raw_ts!r}")
    try:
        return StateRecord(key, activated_at)
    except CorruptStateError as exc:
        raise CorruptStateError(f"{source}: {exc}") from exc


class StateStore:
    """The persisted session record: one small JSON file, replaced atomically."""

    def __init__(self, path: str = DEFAULT_STATE_PATH):
        self.path = path

    def load(self) -> Optional[StateRecord]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = f.read()
        except FileNotFoundError:
            return None
        except UnicodeDecodeError as exc:
            raise CorruptStateError(f"{self.path}: not valid UTF-8 ({exc})") from exc
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise CorruptStateError(f"{self.path}: not valid JSON ({exc})") from exc
        return parse_state_record(data, source=self.path)

    def save(self, record: StateRecord) -> None:
        data = {
            "active_issue_key": record.active_issue_key,
            "activated_at": record.activated_at.isoformat() if record.activated_at else None,
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".state-", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


# -----------------------------
# Clipboard
# -----------------------------
CLIPBOARD_COMMANDS: Tuple[Tuple[str, ...], ...] = (
    ("pbcopy",),
    ("wl-copy",),
    ("xclip", "-selection", "clipboard"),
    ("xsel", "--clipboard", "--input"),
)


def copy_to_clipboard(text: str) -> None:
    errors: List[str] = []
    for cmd in CLIPBOARD_COMMANDS:
        try:
            result = subprocess.run(list(cmd), input=text.encode("utf-8"), capture_output=True, timeout=2)
        except FileNotFoundError:
            errors.append(f"{cmd[0]} not found")
            continue
        except subprocess.TimeoutExpired:
            errors.append(f"{cmd[0]} timed out")
            continue
        if result.returncode == 0:
            return
        stderr = result.stderr.decode("utf-8", "replace").strip()
        errors.append(f"{cmd[0]}: {stderr or f'exit status {result.returncode}'}")
    raise ClipboardUnavailableError("; ".join(errors) or "No clipboard tool available")


# -----------------------------
# Controller
# -----------------------------
@dataclass(frozen=True)
class MoveSelection:
    delta: int


@dataclass(frozen=True)
class AppendChar:
    char: str


@dataclass(frozen=True)
class Backspace:
    pass


@dataclass(frozen=True)
class ActivateSelected:
    pass


@dataclass(frozen=True)
class SubmitWorklog:
    pass


@dataclass(frozen=True)
class DiscardActive:
    pass


@dataclass(frozen=True)
class CopyActiveSummary:
    pass


@dataclass(frozen=True)
class AssignSelected:
    pass


@dataclass(frozen=True)
class RefreshIssues:
    pass


@dataclass(frozen=True)
class Quit:
    pass


@dataclass
class ViewModel:
    rows: List[Issue]
    selected_index: Optional[int]
    query: str
    active_key: Optional[str]
    active_issue: Optional[Issue]
    elapsed: Optional[dt.timedelta]
    status_line: str = ""
    status_is_error: bool = False


def format_duration(td: Optional[dt.timedelta]) -> str:
    if td is None:
        return "/"
    s = max(0, int(td.total_seconds()))
    h, r = divmod(s, 3600)
    m, s = divmod(r, 60)
    return f"{h:d}:{m:02d}:{s:02d}" if h else f"{m:02d}:{s:02d}"


class SessionController:
    """Owns the issue list, the search query, the selection and the timer.

    The controller is the only thing that mutates SessionState. Every state
    change is persisted before the command returns, including when the worklog
    submission that accompanies it fails.
    """

    def __init__(
        self,
        client,
        store: StateStore,
        project: str,
        clock: Optional[Callable[[], dt.datetime]] = None,
        clipboard: Optional[Callable[[str], None]] = None,
    ):
        self.client = client
        self.store = store
        self.project = project
        self.state = SessionState(clock=clock)
        self.copy_text = clipboard or copy_to_clipboard
        self.issues: List[Issue] = []
        self.query = ""
        self.selected_index = 0
        self.status_line = ""
        self.status_is_error = False
        self.should_exit = False
        # Active issues that are not (or no longer) part of the sprint listing
        self._outside_issues: Dict[str, Issue] = {}

    # --- lifecycle ---
    def startup(self) -> None:
        """Restore the persisted timer and load the sprint. Writes nothing."""
        self.state.restore(self.store.load())
        if self.state.is_active:
            logger.info(
                "Restored timer on %s since %s",
                self.state.active_issue_key,
                self.state.activated_at.isoformat(timespec="seconds"),
            )
        self.refresh_issues()
        self._load_outside_active_issue()

    def refresh_issues(self) -> None:
        issues = self.client.search_open_sprint_issues(self.project)
        self.issues = list(issues)
        logger.info("Loaded %d open sprint issues for %s", len(self.issues), self.project)

    def _load_outside_active_issue(self) -> None:
        key = self.state.active_issue_key
        if key is None or key in self._outside_issues:
            return
        if any(issue.key == key for issue in self.issues):
            return
        try:
            self._outside_issues[key] = self.client.get_issue(key)
        except AuthError:
            raise
        except TrackerError as exc:
            logger.warning("Could not load active issue %s: %s", key, exc)
            self._report_error(f"Active issue {key} could not be loaded: {exc}")

    # --- queries ---
    def filtered_issues(self) -> List[Issue]:
        return rank_issues(self.issues, self.query)

    def active_issue(self) -> Optional[Issue]:
        key = self.state.active_issue_key
        if key is None:
            return None
        for issue in self.issues:
            if issue.key == key:
                return issue
        return self._outside_issues.get(key)

    def selected_issue(self) -> Optional[Issue]:
        rows = self.filtered_issues()
        if not rows:
            return None
        return rows[max(0, min(self.selected_index, len(rows) - 1))]

    def current_view(self) -> ViewModel:
        rows = self.filtered_issues()
        selected = max(0, min(self.selected_index, len(rows) - 1)) if rows else None
        return ViewModel(
            rows=rows,
            selected_index=selected,
            query=self.query,
            active_key=self.state.active_issue_key,
            active_issue=self.active_issue(),
            elapsed=self.state.elapsed_now(),
            status_line=self.status_line,
            status_is_error=self.status_is_error,
        )

    # --- commands ---
    def on_command(self, cmd) -> None:
        if isinstance(cmd, MoveSelection):
            self._move(cmd.delta)
        elif isinstance(cmd, AppendChar):
            if cmd.char:
                self.query += cmd.char
                self.selected_index = 0
        elif isinstance(cmd, Backspace):
            if self.query:
                self.query = self.query[:-1]
                self.selected_index = 0
        elif isinstance(cmd, ActivateSelected):
            self._activate_selected()
        elif isinstance(cmd, SubmitWorklog):
            self._submit_active()
        elif isinstance(cmd, DiscardActive):
            self._discard_active()
        elif isinstance(cmd, CopyActiveSummary):
            self._copy_active_summary()
        elif isinstance(cmd, AssignSelected):
            self._assign_selected()
        elif isinstance(cmd, RefreshIssues):
            self._refresh_from_ui()
        elif isinstance(cmd, Quit):
            self.should_exit = True
        else:
            raise TypeError(f"Unknown command: {cmd!r}")

    def _move(self, delta: int) -> None:
        rows = self.filtered_issues()
        if not rows:
            self.selected_index = 0
            return
        current = max(0, min(self.selected_index, len(rows) - 1))
        self.selected_index = max(0, min(len(rows) - 1, current + delta))

    def _activate_selected(self) -> None:
        issue = self.selected_issue()
        if issue is None:
            self._report("No issue selected")
            return
        flushed = self.state.activate(issue.key)
        submitted = True
        try:
            if flushed is not None:
                submitted = self._submit(flushed)
        finally:
            persisted = self._persist()
        if submitted and persisted:
            self._report(f"Activated {issue.key}")

    def _submit_active(self) -> None:
        if not self.state.is_active:
            self._report("No active issue")
            return
        key = self.state.active_issue_key
        request = self.state.deactivate()
        try:
            if request is None:
                self._report(f"Stopped {key}; under a minute, nothing logged")
            else:
                self._submit(request)
        finally:
            self._persist()

    def _discard_active(self) -> None:
        key = self.state.active_issue_key
        self.state.discard()
        if self._persist() and key is not None:
            self._report(f"Discarded timer on {key}")

    def _copy_active_summary(self) -> None:
        if not self.state.is_active:
            return
        issue = self.active_issue()
        if issue is None:
            self._report_error(f"No details loaded for {self.state.active_issue_key}; nothing copied")
            return
        text = issue.summary_line()
        try:
            self.copy_text(text)
        except ClipboardUnavailableError as exc:
            logger.warning("Clipboard copy failed: %s", exc)
            self._report_error(f"Copy failed: {exc}")
            return
        self._report(f"Copied: {text}")

    def _assign_selected(self) -> None:
        issue = self.selected_issue()
        if issue is None:
            self._report("No issue selected")
            return
        try:
            self.client.assign_to_current_user(issue.key)
        except AuthError:
            raise
        except TrackerError as exc:
            logger.error("Assigning %s failed: %s", issue.key, exc)
            self._report_error(f"Assign {issue.key} failed: {exc}")
            return
        if self._refresh_from_ui():
            self._report(f"Assigned {issue.key} to you")

    def _refresh_from_ui(self) -> bool:
        try:
            self.refresh_issues()
        except AuthError:
            raise
        except TrackerError as exc:
            logger.error("Refreshing issues failed: %s", exc)
            self._report_error(f"Refresh failed: {exc}")
            return False
        self._load_outside_active_issue()
        self._report(f"Loaded {len(self.issues)} issues")
        return True

    def _submit(self, request: WorklogRequest) -> bool:
        duration = format_duration(dt.timedelta(seconds=request.seconds))
        try:
            self.client.log_time(request.issue_key, request.started_at, request.ended_at)
        except AuthError:
            logger.error(
                "Worklog for %s (%s from %s) not saved: credentials rejected",
                request.issue_key, duration, request.started_at.isoformat(timespec="seconds"),
            )
            raise
        except TrackerError as exc:
            logger.error(
                "Worklog for %s (%s from %s) not saved: %s",
                request.issue_key, duration, request.started_at.isoformat(timespec="seconds"), exc,
            )
            self._report_error(
                f"Worklog NOT saved for {request.issue_key}: {duration} from "
                f"{request.started_at.strftime('%Y-%m-%d %H:%M')} ({exc})"
            )
            return False
        self._report(f"Logged {duration} on {request.issue_key}")
        return True

    def _persist(self) -> bool:
        try:
            self.store.save(self.state.to_record())
        except OSError as exc:
            logger.error("Saving state to %s failed: %s", self.store.path, exc)
            self._report_error(f"Could not save timer state: {exc}")
            return False
        return True

    def _report(self, message: str) -> None:
        self.status_line = message
        self.status_is_error = False

    def _report_error(self, message: str) -> None:
        self.status_line = message
        self.status_is_error = True


# -----------------------------
# UI helpers (fragments only)
# -----------------------------
THEME_STYLE: Dict[str, str] = {
    'frame.border': '#5f5f5f',
    'frame.label': 'bold #ffd75f',
    'table.header': 'bold #ffd75f',
    'table.selected': 'bg:#444444 bold',
    'table.active': '#87ff5f',
    'table.empty': 'italic #d0d0d0',
    'panel.key': 'bold #87d7ff',
    'panel.timer': 'bold #ffd787',
    'panel.idle': 'italic #d0d0d0',
    'search.prompt': 'bold #5fd7af',
    'status': '#87d7ff',
    'status.error': 'bold #ff8787',
    'help.key': 'bold #87afff',
    'help.text': '#d0d0d0',
}

TABLE_COLUMNS: Tuple[Tuple[str, int], ...] = (("Key", 10), ("Time Spent", 12), ("Assignee", 20))
MIN_TITLE_WIDTH = 20
ROW_MARKER = ">> "

HELP_ITEMS: Tuple[Tuple[str, str], ...] = (
    ("Activate", "<Enter>"),
    ("Submit Worklog", "<C-s>"),
    ("Cancel Worklog", "<C-d>"),
    ("Copy Title", "<C-y>"),
    ("Assign to me", "<C-a>"),
    ("Refresh", "<C-r>"),
    ("Quit", "<Esc>"),
)


def _char_width(ch: str) -> int:
    """Return printable cell width for a single character."""
    if unicodedata.combining(ch) or unicodedata.category(ch) == "Cf":
        return 0
    return max(1, get_cwidth(ch))


def _display_width(text: str) -> int:
    return sum(_char_width(ch) for ch in text)


def _sanitize_cell_text(s: Optional[str]) -> str:
    return (s or "").replace("\n", " ").replace("\r", " ")


def _truncate(s: str, maxlen: int) -> str:
    """Truncate string to a maximum display width, preserving whole glyphs."""
    s = _sanitize_cell_text(s)
    if maxlen <= 0:
        return ""
    if _display_width(s) <= maxlen:
        return s
    ellipsis = "…"
    out: List[str] = []
    width = 0
    for ch in s:
        ch_w = _char_width(ch)
        if width + ch_w + 1 > maxlen:
            break
        out.append(ch)
        width += ch_w
    return "".join(out) + ellipsis


def _pad_display(text: Optional[str], width: int) -> str:
    """Pad/truncate text to an exact display width using spaces."""
    raw = _truncate(_sanitize_cell_text(text), width)
    return raw + " " * max(0, width - _display_width(raw))


def build_table_fragments(view: ViewModel, width: int = 120) -> List[Tuple[str, str]]:
    """Return (style, text) tuples for the issue table FormattedTextControl."""
    title_w = max(MIN_TITLE_WIDTH, width - len(ROW_MARKER) - sum(w + 2 for _, w in TABLE_COLUMNS))
    header = " " * len(ROW_MARKER) + "  ".join(_pad_display(name, w) for name, w in TABLE_COLUMNS) + "  Title"
    frags: List[Tuple[str, str]] = [("class:table.header", header), ("", "\n")]
    if not view.rows:
        msg = "No issue title matches the search." if view.query else "No open issues in the current sprint."
        frags.append(("class:table.empty", " " * len(ROW_MARKER) + msg))
        return frags
    for idx, issue in enumerate(view.rows):
        selected = idx == view.selected_index
        classes = []
        if selected:
            classes.append("class:table.selected")
            # Window scrolls so this row stays visible
            frags.append(("[SetCursorPosition]", ""))
        if issue.key == view.active_key:
            classes.append("class:table.active")
        cells = [
            _pad_display(issue.key, TABLE_COLUMNS[0][1]),
            _pad_display(issue.time_spent, TABLE_COLUMNS[1][1]),
            _pad_display(issue.assignee or "-", TABLE_COLUMNS[2][1]),
            _pad_display(issue.title, title_w),
        ]
        marker = ROW_MARKER if selected else " " * len(ROW_MARKER)
        frags.append((" ".join(classes), marker + "  ".join(cells)))
        frags.append(("", "\n"))
    frags.pop()
    return frags


def build_active_fragments(view: ViewModel) -> List[Tuple[str, str]]:
    if view.active_key is None:
        return [("class:panel.idle", " No issue active")]
    title = view.active_issue.title if view.active_issue else "(details unavailable)"
    return [
        ("", " "),
        ("class:panel.key", view.active_key),
        ("", f" {title} "),
        ("class:panel.timer", f"({format_duration(view.elapsed)})"),
    ]


def build_search_fragments(view: ViewModel) -> List[Tuple[str, str]]:
    return [("class:search.prompt", "> "), ("", view.query)]


def build_status_fragments(view: ViewModel) -> List[Tuple[str, str]]:
    frags: List[Tuple[str, str]] = []
    for label, key in HELP_ITEMS:
        frags.append(("class:help.text", f" {label} "))
        frags.append(("class:help.key", key))
    if view.status_line:
        frags.append(("", "  "))
        frags.append(("class:status.error" if view.status_is_error else "class:status", view.status_line))
    return frags


# -----------------------------
# TUI
# -----------------------------
def _terminal_columns() -> int:
    try:
        return get_app().output.get_size().columns
    except Exception:
        return 120


def build_app(controller: SessionController, input=None, output=None) -> Application:
    """Full-screen browser over the controller.

    Keys only produce commands; everything drawn comes from
    controller.current_view(). The 1s refresh interval only repaints so the
    running timer stays current.
    """
    kb = KeyBindings()

    def dispatch(event, cmd) -> None:
        try:
            controller.on_command(cmd)
        except AuthError as exc:
            logger.error("Credentials rejected; stopping: %s", exc)
            event.app.exit(exception=exc)
            return
        if controller.should_exit:
            event.app.exit()

    @kb.add('up')
    def _(event):
        dispatch(event, MoveSelection(-1))

    @kb.add('down')
    def _(event):
        dispatch(event, MoveSelection(1))

    @kb.add('enter')
    def _(event):
        dispatch(event, ActivateSelected())

    @kb.add('backspace')
    def _(event):
        dispatch(event, Backspace())

    @kb.add('c-s')
    def _(event):
        dispatch(event, SubmitWorklog())

    @kb.add('c-d')
    def _(event):
        dispatch(event, DiscardActive())

    @kb.add('c-y')
    def _(event):
        dispatch(event, CopyActiveSummary())

    @kb.add('c-a')
    def _(event):
        dispatch(event, AssignSelected())

    @kb.add('c-r')
    def _(event):
        dispatch(event, RefreshIssues())

    @kb.add('escape', eager=True)
    @kb.add('c-c')
    def _(event):
        dispatch(event, Quit())

    @kb.add(Keys.Any)
    def _(event):
        char = event.data
        if char and len(char) == 1 and char.isprintable():
            dispatch(event, AppendChar(char))

    table_control = FormattedTextControl(
        text=lambda: build_table_fragments(controller.current_view(), _terminal_columns() - 2),
        show_cursor=False,
    )
    active_control = FormattedTextControl(text=lambda: build_active_fragments(controller.current_view()))
    search_control = FormattedTextControl(text=lambda: build_search_fragments(controller.current_view()))
    status_control = FormattedTextControl(text=lambda: build_status_fragments(controller.current_view()))

    body = HSplit([
        Frame(
            Window(content=table_control, height=Dimension(min=3), wrap_lines=False, always_hide_cursor=True),
            title=f" Jiratrack: {controller.project} ",
        ),
        Frame(Window(content=active_control, height=1, always_hide_cursor=True), title="Current Issue"),
        Frame(Window(content=search_control, height=1, always_hide_cursor=True), title="Search Input"),
        Window(content=status_control, height=1, wrap_lines=False, always_hide_cursor=True),
    ])
    return Application(
        layout=Layout(body),
        key_bindings=kb,
        full_screen=True,
        style=Style.from_dict(THEME_STYLE),
        refresh_interval=1.0,
        input=input,
        output=output,
    )


def run_ui(controller: SessionController) -> None:
    build_app(controller).run()


# -----------------------------
# Logging
# -----------------------------
def setup_logging(log_level: str = 'ERROR', log_path: str = DEFAULT_LOG_PATH) -> logging.Logger:
    # Always reset handlers so --log-level reliably controls file output.
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.setLevel(logging.DEBUG)
    directory = os.path.dirname(os.path.abspath(log_path))
    os.makedirs(directory, exist_ok=True)
    fh = RotatingFileHandler(log_path, maxBytes=2000000, backupCount=2, encoding='utf-8')
    lvl = getattr(logging, str(log_level).upper(), None)
    fh.setLevel(lvl if isinstance(lvl, int) else logging.ERROR)
    fh.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s'))
    logger.addHandler(fh)
    return logger


# -----------------------------
# CLI
# -----------------------------
def print_summary(controller: SessionController, out=None) -> None:
    out = out or sys.stdout
    view = controller.current_view()
    print(f"Project {controller.project}: {len(view.rows)} open sprint issues", file=out)
    for issue in view.rows:
        print(
            f"  {_pad_display(issue.key, TABLE_COLUMNS[0][1])}  "
            f"{_pad_display(issue.time_spent, TABLE_COLUMNS[1][1])}  "
            f"{_pad_display(issue.assignee or '-', TABLE_COLUMNS[2][1])}  {issue.title}",
            file=out,
        )
    if view.active_key is None:
        print("Active: none", file=out)
    else:
        title = view.active_issue.title if view.active_issue else "(details unavailable)"
        print(f"Active: {view.active_key} {title} ({format_duration(view.elapsed)})", file=out)
    if view.status_is_error and view.status_line:
        print(view.status_line, file=sys.stderr)


def main(argv: Optional[Sequence[str]] = None) -> None:
    ap = argparse.ArgumentParser(description="Jira sprint issue browser with a worklog timer")
    ap.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to YAML config")
    ap.add_argument("--state", default=DEFAULT_STATE_PATH, help="Path to the active timer state file")
    ap.add_argument("--log-level", default="ERROR", help="File log level (DEBUG, INFO, WARNING, ERROR)")
    ap.add_argument("--log-file", default=DEFAULT_LOG_PATH, help="Path to the rotating log file")
    ap.add_argument("--no-ui", action="store_true", help="Print the sprint issues and active timer, then exit")
    args = ap.parse_args(argv)

    try:
        setup_logging(args.log_level, args.log_file)
    except OSError as e:
        print(f"Cannot open log file {args.log_file}: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        cfg = load_config(args.config)
    except (ValueError, OSError, yaml.YAMLError) as e:
        print(f"Config error: {e}", file=sys.stderr)
        sys.exit(1)

    token = resolve_api_token(cfg)
    if not token:
        print("JIRA_API_TOKEN is not set (env, config user_api_token or .env).", file=sys.stderr)
        sys.exit(1)

    client = JiraClient(cfg.atlassian_url, cfg.user_email, token)
    controller = SessionController(client, StateStore(args.state), cfg.project)

    try:
        controller.startup()
    except CorruptStateError as e:
        logger.error("Corrupt state file: %s", e)
        print(f"Refusing to start, state file is corrupt: {e}", file=sys.stderr)
        sys.exit(1)
    except AuthError as e:
        logger.error("Authentication failed: %s", e)
        print(f"Authentication failed: {e}. Check user_email and the API token.", file=sys.stderr)
        sys.exit(2)
    except NetworkError as e:
        logger.error("Network error on startup: %s", e)
        print(f"Cannot reach Jira: {e}", file=sys.stderr)
        sys.exit(1)
    except TrackerError as e:
        logger.error("Loading issues failed: %s", e)
        print(f"Loading issues failed: {e}", file=sys.stderr)
        sys.exit(1)
    except OSError as e:
        print(f"Cannot read state file: {e}", file=sys.stderr)
        sys.exit(1)

    if args.no_ui:
        print_summary(controller)
        return

    try:
        run_ui(controller)
    except AuthError as e:
        print(f"Authentication failed: {e}. The timer state was saved.", file=sys.stderr)
        sys.exit(2)
    if controller.status_is_error and controller.status_line:
        print(controller.status_line, file=sys.stderr)


if __name__ == "__main__":
    main()
