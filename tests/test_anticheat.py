import pytest
import requests

from utils.anticheat import (
    AntiCheatStatus, HttpAntiCheatClassifier, IpAntiCheatClassifier,
    build_classifier, penalty_level_for, safe_classify, safe_track
)


@pytest.mark.parametrize("users_on_ip, level", [
    (1, 0), (2, 1), (3, 2), (4, 2), (5, 3), (9, 3), (10, 4), (40, 4),
])
def test_penalty_level_thresholds(users_on_ip, level):
    assert penalty_level_for(users_on_ip) == level


def test_ip_classifier_counts_distinct_users(make_user):
    classifier = IpAntiCheatClassifier()
    for uid in ('a1', 'a2', 'a3'):
        make_user(uid)
        classifier.track(uid, '10.0.0.8', 'pytest')
    classifier.track('a1', '10.0.0.8', 'pytest')

    status = classifier.classify('a1', '10.0.0.8')
    assert status.total_users_on_ip == 3
    assert status.other_users_on_ip == 2
    assert status.penalty_level == 2
    assert status.efficiency_multiplier == 0.5
    assert status.should_warn


def test_ip_classifier_uses_latest_ip_when_none_given(make_user):
    classifier = IpAntiCheatClassifier()
    make_user('b1')
    classifier.track('b1', '192.168.1.20')

    status = classifier.classify('b1')
    assert status.penalty_level == 0
    assert status.efficiency_multiplier == 1.0
    assert not status.should_warn


def test_ip_classifier_without_history_has_no_penalty(make_user):
    make_user('c1')
    status = IpAntiCheatClassifier().classify('c1')
    assert status.efficiency_multiplier == 1.0


class _FakeResponse:

    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")

    def json(self):
        return self.payload


def test_http_classifier_parses_response(monkeypatch):
    calls = []

    def fake_post(url, json=None, timeout=None):
        calls.append((url, json, timeout))
        return _FakeResponse({
            'efficiency_multiplier': 0.3,
            'penalty_level': 3,
            'total_users_on_ip': 6,
            'warning_message': 'multi-accounting'
        })

    monkeypatch.setattr(requests, 'post', fake_post)
    classifier = HttpAntiCheatClassifier('http://anticheat.local/', timeout=2)
    status = classifier.classify('u1', '1.2.3.4')

    assert calls == [('http://anticheat.local/classify', {'user_id': 'u1', 'ip_address': '1.2.3.4'}, 2)]
    assert status.penalty_level == 3
    assert status.efficiency_multiplier == 0.3
    assert status.warning_message == 'multi-accounting'


def test_safe_classify_falls_back_on_timeout(app, monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.Timeout("classifier timed out")

    monkeypatch.setattr(requests, 'post', fake_post)
    status = safe_classify(HttpAntiCheatClassifier('http://anticheat.local'), 'u1', '1.2.3.4')

    assert status.efficiency_multiplier == 1.0
    assert status.penalty_level == 0


def test_safe_classify_falls_back_on_server_error(app, monkeypatch):
    monkeypatch.setattr(requests, 'post', lambda *a, **kw: _FakeResponse({}, status_code=500))
    status = safe_classify(HttpAntiCheatClassifier('http://anticheat.local'), 'u1')
    assert status.efficiency_multiplier == 1.0


def test_safe_track_swallows_transport_errors(app, monkeypatch):
    def fake_post(*args, **kwargs):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, 'post', fake_post)
    safe_track(HttpAntiCheatClassifier('http://anticheat.local'), 'u1', '1.2.3.4')


def test_build_classifier_from_config():
    assert isinstance(build_classifier({}), IpAntiCheatClassifier)
    http = build_classifier({'ANTICHEAT_SERVICE_URL': 'http://x', 'ANTICHEAT_TIMEOUT_SECONDS': 5})
    assert isinstance(http, HttpAntiCheatClassifier)
    assert http.timeout == 5


def test_status_to_dict():
    data = AntiCheatStatus(0.75, 1, 2, 'shared').to_dict()
    assert data['otherUsersOnIp'] == 1
    assert data['penaltyLevel'] == 1
