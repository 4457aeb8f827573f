import json
import os
from collections import namedtuple

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from remote_jenkins import remote_jenkins
from remote_jenkins import JobRequest
from remote_jenkins import Session


g_url = 'https://ci.example.com'
g_auth = ('username', 'apitoken')
g_params = [
    '-u', g_url, '-j', 'deploy job', '-s', g_auth[0], '-r', g_auth[1],
    '-p', 'V=1', '-t', 'tok',
]
g_request = JobRequest(
    url=g_url,
    job='deploy job',
    params=('V=1', 'token=tok'),
    auth=g_auth,
    verify_ssl=True,
)
g_trigger = g_url + '/job/deploy%20job/buildWithParameters?V=1&token=tok'
g_queue = g_url + '/queue/item/42/'
g_build = g_url + '/job/deploy/12/'


class FakeResponse:
    """
    Mock response class that works more or less like a requests Response.
    """

    def __init__(self, text='', headers=None, status_code=200):
        self.text = text
        self.headers = CaseInsensitiveDict(headers or {})
        self.status_code = status_code


@pytest.fixture(autouse=True)
def config():
    """
    Restore the original CONFIG in the remote_jenkins module after each test.
    """
    backup = remote_jenkins.CONFIG.copy()
    try:
        yield remote_jenkins.CONFIG
    finally:
        remote_jenkins.CONFIG.clear()
        remote_jenkins.CONFIG.update(backup)


@pytest.fixture
def session():
    return Session(g_auth)


@pytest.fixture
def mock_url(monkeypatch):
    """
    Returns a function that allows you to return canned FakeResponses when a
    specific url is requested.

    Each mock is a dict with the `url` and optionally the `method` (POST by
    default), plus either `text`, `json`, `headers`, `status_code` or an
    `error` to raise. Several mocks for the same url are returned one after
    the other, and the last one keeps being returned after that.

    The function returns a list where every request is logged as a
    (method, url, kwargs) tuple.
    """
    calls = []

    def ret(mock_pairs):
        if not isinstance(mock_pairs, list):
            mock_pairs = [mock_pairs]
        responses = {}
        for pair in mock_pairs:
            pair = dict(pair)
            key = (pair.pop('url'), pair.pop('method', 'POST').upper())
            responses.setdefault(key, []).append(pair)

        def mock(self, method, url, **kwargs):
            calls.append((method.upper(), url, kwargs))
            queue = responses.get((url, method.upper()), None)
            if not queue:
                raise RuntimeError(
                    "No mock response set for url '{}' ({})".format(
                        url, method
                    )
                )
            resp = queue.pop(0) if len(queue) > 1 else queue[0]
            if 'error' in resp:
                raise resp['error']

            text = resp.get('text', '')
            if 'json' in resp:
                text = json.dumps(resp['json'])
            return FakeResponse(
                text,
                headers=resp.get('headers', {}),
                status_code=resp.get('status_code', 200),
            )

        monkeypatch.setattr(requests.Session, 'request', mock)
        return calls

    return ret


@pytest.fixture
def sleeps(monkeypatch):
    """
    Replace the progress bar with a function that doesn't sleep and logs every
    (msg, duration) it was called with.
    """
    calls = []

    def fake_progress(msg, duration, millis=None):
        calls.append((msg, duration))

    monkeypatch.setattr(remote_jenkins, 'show_progress', fake_progress)
    return calls


@pytest.fixture(scope='function')
def terminal_size(monkeypatch):
    """
    Set a fake os.get_terminal_size() function that returns (30, 30).
    """

    def fake_terminal_size(*args, **kwargs):
        return Size(30, 30)

    Size = namedtuple('terminal_size', 'columns lines')
    monkeypatch.setattr(os, 'get_terminal_size', fake_terminal_size)


@pytest.fixture(scope='function')
def tty(monkeypatch, terminal_size):
    """
    Set up environment so it looks like a valid TTY.
    """
    monkeypatch.setattr(remote_jenkins, 'is_progressbar_capable', lambda: True)
