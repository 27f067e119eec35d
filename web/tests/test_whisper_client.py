import pytest

import services.whisper_client as wc
from services.http_client import join_url, request_json
from services.whisper_client import WhisperClient


def test_submit_requires_name_and_message(local_storage):
    client = WhisperClient(local_storage)
    with pytest.raises(ValueError):
        client.submit('', 'hello')
    with pytest.raises(ValueError):
        client.submit('Ann', '   ')


def test_submit_without_api_stores_locally(local_storage):
    client = WhisperClient(local_storage)
    out = client.submit(' Ann ', 'hello')
    assert out['success'] is True
    assert out['local'] is True
    messages = client.local_messages()
    assert len(messages) == 1
    assert messages[0]['name'] == 'Ann'
    assert messages[0]['read'] is False

    client.submit('Ben', 'second')
    assert [m['name'] for m in client.local_messages()] == ['Ben', 'Ann']


def test_submit_posts_to_create_issue(local_storage, monkeypatch):
    calls = []

    def fake(method, url, *, body=None, timeout_seconds=10.0, headers=None):
        calls.append((method, url, body))
        return 200, {'success': True, 'issueNumber': 4, 'issueUrl': 'u'}

    monkeypatch.setattr(wc, 'request_json', fake)
    client = WhisperClient(local_storage, api_base='https://api.example.test/api')
    out = client.submit('Ann', 'hello', email='ann@example.com')
    assert out['issueNumber'] == 4
    assert calls == [
        ('POST', 'https://api.example.test/api/create-issue', {'name': 'Ann', 'message': 'hello', 'email': 'ann@example.com'})
    ]
    assert client.local_messages() == []


def test_submit_surfaces_server_error(local_storage, monkeypatch):
    monkeypatch.setattr(wc, 'request_json', lambda method, url, **kw: (500, {'error': 'GitHub token not configured'}))
    client = WhisperClient(local_storage, api_base='https://api.example.test/api')
    with pytest.raises(RuntimeError, match='GitHub token not configured'):
        client.submit('Ann', 'hello')


def test_join_url():
    assert join_url('', 'track-visit') == ''
    assert join_url('https://x.test/api/', '/track-visit') == 'https://x.test/api/track-visit'
    assert join_url('https://x.test/api', '') == 'https://x.test/api'


def test_request_json_rejects_other_schemes():
    with pytest.raises(ValueError):
        request_json('GET', 'file:///etc/passwd')


def test_api_base_defaults_to_environment(local_storage, monkeypatch):
    monkeypatch.setenv('SITE_API_BASE', 'https://site.example.test/api')
    assert WhisperClient(local_storage).api_base == 'https://site.example.test/api'
    assert WhisperClient(local_storage, api_base='').api_base == ''
