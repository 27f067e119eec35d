import pytest

import services.geoip as geoip
from services.geoip import GeoLocation, is_private_address, lookup_geo
from services.logutil import reset_throttle


@pytest.fixture(autouse=True)
def _fresh_throttle():
    reset_throttle()
    yield
    reset_throttle()


@pytest.mark.parametrize(
    'ip',
    ['', None, 'unknown', 'not-an-ip', '127.0.0.1', '10.1.2.3', '192.168.0.5', '172.16.0.1', '169.254.1.1', '::1', '::ffff:10.0.0.1'],
)
def test_private_or_invalid_addresses(ip):
    assert is_private_address(ip) is True


@pytest.mark.parametrize('ip', ['8.8.8.8', '1.1.1.1', '2001:4860:4860::8888', '::ffff:8.8.8.8'])
def test_public_addresses(ip):
    assert is_private_address(ip) is False


def test_private_address_skips_lookup(monkeypatch):
    def boom(*a, **kw):
        raise AssertionError('should not be called')

    monkeypatch.setattr(geoip, 'request_json', boom)
    assert lookup_geo('192.168.1.1') == GeoLocation('未知', '未知', '未知')


def test_successful_lookup(monkeypatch):
    seen = {}

    def fake(method, url, **kw):
        seen['url'] = url
        return 200, {'status': 'success', 'country': 'Taiwan', 'regionName': 'Taipei City', 'city': 'Taipei'}

    monkeypatch.delenv('GEOIP_URL', raising=False)
    monkeypatch.setattr(geoip, 'request_json', fake)
    assert lookup_geo('8.8.8.8') == GeoLocation('Taiwan', 'Taipei City', 'Taipei')
    assert seen['url'].startswith('http://ip-api.com/json/8.8.8.8?')


def test_custom_lookup_url(monkeypatch):
    seen = {}

    def fake(method, url, **kw):
        seen['url'] = url
        return 200, {'status': 'success', 'country': 'Japan'}

    monkeypatch.setenv('GEOIP_URL', 'https://geo.example.test/{ip}')
    monkeypatch.setattr(geoip, 'request_json', fake)
    assert lookup_geo('1.1.1.1') == GeoLocation('Japan', '未知', '未知')
    assert seen['url'] == 'https://geo.example.test/1.1.1.1'


def test_failed_status_returns_unknown(monkeypatch):
    monkeypatch.setattr(geoip, 'request_json', lambda m, u, **kw: (200, {'status': 'fail', 'message': 'reserved range'}))
    assert lookup_geo('8.8.8.8') == GeoLocation()


def test_network_error_returns_unknown(monkeypatch):
    def fail(method, url, **kw):
        raise OSError('timed out')

    monkeypatch.setattr(geoip, 'request_json', fail)
    assert lookup_geo('8.8.8.8') == GeoLocation()


def test_timeout_comes_from_environment(monkeypatch):
    seen = {}

    def fake(method, url, *, timeout_seconds, **kw):
        seen['timeout'] = timeout_seconds
        return 200, {'status': 'success', 'country': 'Taiwan'}

    monkeypatch.setattr(geoip, 'request_json', fake)
    monkeypatch.delenv('GEOIP_TIMEOUT_SECONDS', raising=False)
    lookup_geo('8.8.8.8')
    assert seen['timeout'] == 3.0

    monkeypatch.setenv('GEOIP_TIMEOUT_SECONDS', '1.5')
    lookup_geo('8.8.8.8')
    assert seen['timeout'] == 1.5
