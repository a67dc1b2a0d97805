import datetime as dt

import pytest
import requests

import jiratrack as jt


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else ("" if payload is None else str(payload))

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    """Replays queued responses (or raises queued exceptions) and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def request(self, method, url, params=None, json=None, timeout=None):
        self.calls.append({'method': method, 'url': url, 'params': params, 'json': json, 'timeout': timeout})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _raw_issue(key, summary, *, time_spent=None, assignee=None):
    fields = {'summary': summary}
    fields['timetracking'] = {'timeSpent': time_spent} if time_spent else {}
    fields['assignee'] = {'displayName': assignee} if assignee else None
    return {'id': key.split('-')[1], 'key': key, 'fields': fields}


def _client(*responses, **kwargs):
    session = FakeSession(*responses)
    client = jt.JiraClient("https://acme.atlassian.net/", "me@acme.test", "tok", session=session, **kwargs)
    return client, session


def test_default_session_uses_basic_auth():
    s = jt._session("me@acme.test", "tok")
    assert s.auth == ("me@acme.test", "tok")
    assert s.headers["Accept"] == "application/json"


def test_search_builds_sprint_query_and_parses_issues():
    client, session = _client(FakeResponse(200, {
        'issues': [
            _raw_issue('IMG-1', 'Fix login bug', time_spent='1h 30m', assignee='Alice'),
            _raw_issue('IMG-2', 'Write release notes'),
        ],
        'isLast': True,
    }))
    issues = client.search_open_sprint_issues("IMG")
    assert issues == [
        jt.Issue(id='1', key='IMG-1', title='Fix login bug', time_spent='1h 30m', assignee='Alice'),
        jt.Issue(id='2', key='IMG-2', title='Write release notes', time_spent='0h', assignee=''),
    ]
    call = session.calls[0]
    assert call['method'] == 'GET'
    assert call['url'] == 'https://acme.atlassian.net/rest/api/3/search/jql'
    assert call['params']['jql'] == (
        'sprint in openSprints() AND project = "IMG" AND status != done AND status != archived'
    )
    assert call['params']['fields'] == 'id,summary,key,timetracking,assignee'
    assert call['timeout'] == 30


def test_search_follows_next_page_token():
    client, session = _client(
        FakeResponse(200, {'issues': [_raw_issue('IMG-1', 'One')], 'nextPageToken': 'p2', 'isLast': False}),
        FakeResponse(200, {'issues': [_raw_issue('IMG-2', 'Two')], 'isLast': True}),
    )
    issues = client.search_open_sprint_issues("IMG")
    assert [i.key for i in issues] == ['IMG-1', 'IMG-2']
    assert 'nextPageToken' not in session.calls[0]['params']
    assert session.calls[1]['params']['nextPageToken'] == 'p2'


def test_search_stops_at_max_pages():
    page = {'issues': [_raw_issue('IMG-1', 'One')], 'nextPageToken': 'again', 'isLast': False}
    client, session = _client(FakeResponse(200, page), FakeResponse(200, page), max_pages=2)
    assert len(client.search_open_sprint_issues("IMG")) == 2
    assert len(session.calls) == 2


@pytest.mark.parametrize('response, error', [
    (requests.exceptions.ConnectionError("refused"), jt.NetworkError),
    (requests.exceptions.Timeout("slow"), jt.NetworkError),
    (FakeResponse(503, text="unavailable"), jt.NetworkError),
    (FakeResponse(401, text="unauthorized"), jt.AuthError),
    (FakeResponse(403, text="forbidden"), jt.AuthError),
    (FakeResponse(200, text="<html>login</html>"), jt.MalformedResponseError),
    (FakeResponse(200, {'unexpected': True}), jt.MalformedResponseError),
    (FakeResponse(200, {'issues': [{'id': '1', 'key': 'IMG-1'}]}), jt.MalformedResponseError),
    (FakeResponse(400, {'errorMessages': ["The value 'NOPE' does not exist for the field 'project'."]}), jt.RejectedError),
])
def test_search_error_mapping(response, error):
    client, _ = _client(response)
    with pytest.raises(error):
        client.search_open_sprint_issues("IMG")


def test_all_tracker_errors_share_a_base():
    for cls in (jt.NetworkError, jt.AuthError, jt.MalformedResponseError, jt.RejectedError, jt.NotFoundError):
        assert issubclass(cls, jt.TrackerError)


def test_get_issue():
    client, session = _client(FakeResponse(200, _raw_issue('IMG-9', 'Carry-over', assignee='Bob')))
    issue = client.get_issue('IMG-9')
    assert issue.title == 'Carry-over'
    assert issue.assignee == 'Bob'
    assert session.calls[0]['url'].endswith('/rest/api/3/issue/IMG-9')


def test_get_issue_not_found():
    client, _ = _client(FakeResponse(404, {'errorMessages': ['Issue does not exist']}))
    with pytest.raises(jt.NotFoundError, match='Issue does not exist'):
        client.get_issue('IMG-404')


def test_log_time_payload():
    tz = dt.timezone(dt.timedelta(hours=2))
    start = dt.datetime(2024, 1, 10, 9, 0, 5, 123456, tzinfo=tz)
    end = start + dt.timedelta(minutes=25, seconds=30, microseconds=900000)
    client, session = _client(FakeResponse(201, {'id': '555'}))
    client.log_time('IMG-1', start, end)
    call = session.calls[0]
    assert call['method'] == 'POST'
    assert call['url'] == 'https://acme.atlassian.net/rest/api/3/issue/IMG-1/worklog'
    assert call['json'] == {'started': '2024-01-10T09:00:05.123+0200', 'timeSpentSeconds': 1530}


def test_log_time_under_a_minute_sends_nothing():
    client, session = _client()
    start = dt.datetime(2024, 1, 10, 9, 0, tzinfo=dt.timezone.utc)
    client.log_time('IMG-1', start, start + dt.timedelta(seconds=59))
    assert session.calls == []


@pytest.mark.parametrize('status, error', [
    (400, jt.RejectedError),
    (404, jt.RejectedError),
    (401, jt.AuthError),
    (500, jt.NetworkError),
])
def test_log_time_error_mapping(status, error):
    client, _ = _client(FakeResponse(status, {'errorMessages': ['nope']}))
    start = dt.datetime(2024, 1, 10, 9, 0, tzinfo=dt.timezone.utc)
    with pytest.raises(error):
        client.log_time('IMG-1', start, start + dt.timedelta(minutes=5))


def test_assign_fetches_account_once():
    client, session = _client(
        FakeResponse(200, {'accountId': 'acc-123', 'displayName': 'Me'}),
        FakeResponse(204, text=''),
        FakeResponse(204, text=''),
    )
    client.assign_to_current_user('IMG-1')
    client.assign_to_current_user('IMG-2')
    assert [c['url'].rsplit('/rest/api/3', 1)[1] for c in session.calls] == [
        '/myself',
        '/issue/IMG-1/assignee',
        '/issue/IMG-2/assignee',
    ]
    assert session.calls[1]['method'] == 'PUT'
    assert session.calls[1]['json'] == {'accountId': 'acc-123'}


def test_assign_without_account_id_is_malformed():
    client, _ = _client(FakeResponse(200, {'displayName': 'Me'}))
    with pytest.raises(jt.MalformedResponseError):
        client.assign_to_current_user('IMG-1')
