import json
from datetime import datetime, timedelta, timezone

import pytest
import requests

import trakt_utils
from store_utils import DiskStore


class DummyResponse:
    def __init__(self, data=None, status_code=200, text=None):
        self._data = data
        self.status_code = status_code
        self.text = text if text is not None else json.dumps(data)
        self.content = self.text.encode("utf-8")

    def json(self):
        if self._data is None:
            raise ValueError("no JSON")
        return self._data

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class DummySession:
    """Records Trakt calls and answers them from ``routes``.

    ``routes`` maps ``(method, path)`` to a :class:`DummyResponse`, or to an
    exception instance that is raised instead.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def _answer(self, method, url, **kwargs):
        path = url.replace(trakt_utils.TRAKT_API, "")
        self.calls.append({"method": method, "path": path, **kwargs})
        answer = self.routes.get((method, path))
        if answer is None:
            raise AssertionError(f"unexpected {method} {path}")
        if isinstance(answer, Exception):
            raise answer
        return answer

    def request(self, method, url, **kwargs):
        return self._answer(method, url, **kwargs)

    def post(self, url, **kwargs):
        return self._answer("POST", url, **kwargs)

    def paths(self, method=None):
        return [c["path"] for c in self.calls if method is None or c["method"] == method]


def make_webhook_payload(
    event="media.play",
    account="Alice",
    owner=False,
    section="movie",
    guid="com.plexapp.agents.imdb://tt0133093?lang=en",
    title="The Matrix",
    year=1999,
):
    return {
        "event": event,
        "user": True,
        "owner": owner,
        "Account": {"id": 1, "title": account},
        "Server": {"title": "server", "uuid": "abc"},
        "Metadata": {
            "librarySectionType": section,
            "guid": guid,
            "title": title,
            "year": year,
        },
    }


MATRIX_SEARCH = [
    {"type": "movie", "movie": {"title": "The Matrix", "year": 2021, "ids": {"trakt": 1}}},
    {"type": "movie", "movie": {"title": "The Matrix", "year": 1999, "ids": {"trakt": 481}}},
]


@pytest.fixture
def session():
    return DummySession()


@pytest.fixture
def trakt(session):
    return trakt_utils.Trakt("cid", "secret", session=session)


@pytest.fixture
def store(tmp_path):
    return DiskStore(str(tmp_path))


@pytest.fixture
def make_stale():
    def _make_stale(user, days=61):
        user.updated_at = datetime.now(timezone.utc) - timedelta(days=days)
        return user

    return _make_stale
