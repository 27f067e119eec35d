import copy
import os
import sys
from datetime import datetime, timezone

import pytest


WEB_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if WEB_DIR not in sys.path:
    sys.path.insert(0, WEB_DIR)

from services.errors import IssueStoreError  # noqa: E402
from services.geoip import GeoLocation, is_private_address  # noqa: E402
from services.local_storage import LocalStorage, SessionStorage  # noqa: E402


class FakeIssueStore:
    """In-memory stand-in for GitHubIssueStore."""

    def __init__(self, token='test-token'):
        self.token = token
        self.issues = []
        self.fail_with = None
        self._next_number = 1

    def has_credentials(self):
        return bool(self.token)

    def _check(self):
        if self.fail_with:
            raise IssueStoreError(self.fail_with, status=502)

    def _find(self, number):
        for issue in self.issues:
            if issue['number'] == int(number):
                return issue
        raise IssueStoreError('Not Found', status=404)

    def list_issues(self, labels, *, state='all', per_page=100, sort='created', direction='desc'):
        self._check()
        out = []
        for issue in reversed(self.issues):
            if all(label in issue['labels'] for label in labels):
                if state == 'all' or issue['state'] == state:
                    out.append(copy.deepcopy(issue))
        return out[:per_page]

    def get_issue(self, number):
        self._check()
        return copy.deepcopy(self._find(number))

    def create_issue(self, title, body, labels):
        self._check()
        number = self._next_number
        self._next_number += 1
        issue = {
            'number': number,
            'title': title,
            'body': body,
            'labels': list(labels),
            'state': 'open',
            'created_at': datetime.now(timezone.utc).strftime('%Y-%m-%dT%H:%M:%SZ'),
            'html_url': f'https://github.com/oldfish101240/whisper-box/issues/{number}',
        }
        self.issues.append(issue)
        return copy.deepcopy(issue)

    def update_issue(self, number, **fields):
        self._check()
        issue = self._find(number)
        for k, v in fields.items():
            if v is not None:
                issue[k] = v
        return copy.deepcopy(issue)

    def add_raw(self, body, labels, created_at, state='open'):
        issue = self.create_issue('raw', body, labels)
        stored = self._find(issue['number'])
        stored['created_at'] = created_at
        stored['state'] = state
        return stored


def _fake_geo(ip, timeout_seconds=3.0):
    if is_private_address(ip):
        return GeoLocation()
    return GeoLocation(country='Taiwan', region='Taipei City', city='Taipei')


@pytest.fixture
def app_module():
    try:
        import flask  # noqa: F401
    except Exception as e:
        pytest.skip(f"Flask not available in this environment: {e}")

    import app as app_module

    app_module.app.testing = True
    return app_module


@pytest.fixture
def fake_store(app_module, monkeypatch):
    store = FakeIssueStore()
    monkeypatch.setattr(app_module, 'get_issue_store', lambda: store)
    monkeypatch.setattr(app_module, 'lookup_geo', _fake_geo)
    return store


@pytest.fixture
def client(app_module, fake_store):
    return app_module.app.test_client()


@pytest.fixture(autouse=True)
def _no_site_api(monkeypatch):
    monkeypatch.delenv('SITE_API_BASE', raising=False)


@pytest.fixture
def local_storage(tmp_path):
    return LocalStorage(db_path=str(tmp_path / 'localstorage.db'), origin='https://example.test')


@pytest.fixture
def session_storage():
    return SessionStorage()
