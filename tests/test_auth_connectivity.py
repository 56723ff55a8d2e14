from datetime import timedelta

import requests

from datetime_utils import utc_now
from services.auth_token import TokenStore
from services.connectivity import ConnectivityMonitor


def test_token_store_round_trip(tmp_path):
    store = TokenStore(tmp_path / "secrets" / "token.json")
    assert store.get_token() is None

    store.set_token("abc", utc_now() + timedelta(hours=1))
    assert store.get_token() == "abc"
    assert store.has_valid_token()

    store.mark_invalid()
    assert store.get_token() is None

    store.clear()
    assert not store.path.exists()


def test_expired_token_is_not_valid(tmp_path):
    store = TokenStore(tmp_path / "token.json")
    store.set_token("old", utc_now() - timedelta(minutes=1))
    assert store.has_valid_token() is False


def test_corrupt_token_file_reads_as_empty(tmp_path):
    path = tmp_path / "token.json"
    path.write_text("{not json", encoding="utf-8")
    assert TokenStore(path).get_token() is None


class _HeadSession:
    def __init__(self):
        self.fail = False
        self.calls = 0

    def head(self, url, **kwargs):
        self.calls += 1
        if self.fail:
            raise requests.ConnectionError("unreachable")
        return object()


def test_connectivity_reports_transitions():
    session = _HeadSession()
    monitor = ConnectivityMonitor("https://api.example.test/api", session=session)
    changes = []
    monitor.subscribe(changes.append)

    assert monitor.is_online() is True
    session.fail = True
    assert monitor.is_online() is False
    assert monitor.is_online() is False
    session.fail = False
    assert monitor.is_online() is True

    assert changes == [False, True]
    assert monitor.last_state is True

    monitor.unsubscribe(changes.append)
    session.fail = True
    monitor.is_online()
    assert changes == [False, True]
