from datetime import datetime, timezone

import pytest

import services.visit_tracker as vt
from services.analytics_store import AnalyticsStore
from services.visit_tracker import LAST_PAGE_VIEW_KEY, LAST_VIEW_TIME_KEY, VisitTracker


NOW = datetime(2025, 6, 1, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def posted(monkeypatch):
    calls = []
    monkeypatch.setattr(vt, 'post_json_in_background', lambda url, body, **kw: calls.append((url, body)))
    return calls


@pytest.fixture
def tracker(local_storage, session_storage, posted):
    return VisitTracker(
        AnalyticsStore(local_storage),
        session_storage,
        api_base='https://api.example.test/api',
        user_agent='pytest',
    )


def test_same_path_in_session_counts_once(tracker, posted):
    assert tracker.track_page_view('/', now=NOW) is True
    assert tracker.track_page_view('/', now=NOW) is False

    stats = tracker.get_stats(now=NOW)
    assert stats['totalViews'] == 1
    assert stats['todayViews'] == 1
    assert stats['pageViews'] == {'/': 1}
    assert len(stats['records']) == 1
    assert posted == [('https://api.example.test/api/track-visit', {'path': '/', 'referrer': '直接訪問'})]


def test_different_path_is_counted(tracker, session_storage, posted):
    tracker.track_page_view('/', now=NOW)
    tracker.track_page_view('/about.html', referrer='https://example.org/', now=NOW)

    stats = tracker.get_stats(now=NOW)
    assert stats['totalViews'] == 2
    assert stats['pageViews'] == {'/': 1, '/about.html': 1}
    assert stats['dailyViews'] == {'2025-06-01': 2}
    record = stats['records'][-1]
    assert record['referrer'] == 'https://example.org/'
    assert record['userAgent'] == 'pytest'
    assert record['timestamp'] == '2025-06-01T12:30:00.000Z'
    assert session_storage.get_item(LAST_PAGE_VIEW_KEY) == '/about.html'
    assert session_storage.get_item(LAST_VIEW_TIME_KEY) == '2025-06-01T12:30:00.000Z'
    assert posted[-1][1] == {'path': '/about.html', 'referrer': 'https://example.org/'}


def test_direct_visit_stored_as_direct(tracker):
    tracker.track_page_view('/', now=NOW)
    assert tracker.get_stats(now=NOW)['records'][0]['referrer'] == 'direct'


def test_no_api_base_skips_post(local_storage, session_storage, posted):
    t = VisitTracker(AnalyticsStore(local_storage), session_storage)
    assert t.track_page_view('/', now=NOW) is True
    assert posted == []


def test_daily_views_for_chart(tracker):
    tracker.track_page_view('/', now=NOW)
    chart = tracker.get_daily_views_for_chart(days=3, now=NOW)
    assert chart == [
        {'date': '2025-05-30', 'views': 0},
        {'date': '2025-05-31', 'views': 0},
        {'date': '2025-06-01', 'views': 1},
    ]


def test_export_csv(tracker):
    assert tracker.export_csv() == ''
    tracker.track_page_view('/a', referrer='https://x.test/', now=NOW)
    lines = tracker.export_csv().split('\n')
    assert lines[0] == '時間,日期,頁面,來源,時段'
    hour = NOW.astimezone().hour
    assert lines[1] == f'"2025-06-01T12:30:00.000Z","2025-06-01","/a","https://x.test/","{hour}:00"'


def test_export_json_and_reset(tracker):
    tracker.track_page_view('/', now=NOW)
    assert '"totalViews": 1' in tracker.export_json()
    tracker.reset()
    assert tracker.get_stats(now=NOW)['totalViews'] == 0
