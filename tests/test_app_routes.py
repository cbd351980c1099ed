import json

import pytest

import app as app_module
from store_utils import DiskStore

from conftest import MATRIX_SEARCH, DummyResponse, make_webhook_payload


@pytest.fixture
def client(store, trakt):
    flask_app = app_module.create_app(store=store, trakt=trakt, allowed_hosts=[])
    flask_app.testing = True
    return flask_app.test_client()


def post_webhook(client, user_id, payload):
    return client.post(
        f"/api?id={user_id}",
        data={"payload": json.dumps(payload)},
        content_type="multipart/form-data",
    )


def test_authorize_creates_user_and_shows_webhook_url(client, store, session):
    session.routes[("POST", "/oauth/token")] = DummyResponse({"access_token": "a", "refresh_token": "r"})

    resp = client.get("/authorize?username=Alice&code=xyz", base_url="https://plaxt.example")

    assert resp.status_code == 200
    user = store.get_by_username("alice")
    assert user is not None
    assert f"https://plaxt.example/api?id={user.id}" in resp.get_data(as_text=True)
    assert session.calls[0]["json"]["redirect_uri"] == "https://plaxt.example/authorize?username=alice"


def test_authorize_behind_proxy_uses_forwarded_scheme(client, session):
    session.routes[("POST", "/oauth/token")] = DummyResponse({"access_token": "a", "refresh_token": "r"})

    client.get(
        "/authorize?username=alice&code=xyz",
        base_url="http://internal:8000",
        headers={"X-Forwarded-Proto": "https", "X-Forwarded-Host": "plaxt.example"},
    )

    assert session.calls[0]["json"]["redirect_uri"] == "https://plaxt.example/authorize?username=alice"


def test_authorize_with_rejected_code_stores_nothing(client, store, session):
    session.routes[("POST", "/oauth/token")] = DummyResponse({"error": "invalid_grant"}, status_code=401)

    resp = client.get("/authorize?username=alice&code=bad")

    assert resp.status_code == 401
    assert store.get_by_username("alice") is None


def test_authorize_requires_username_and_code(client):
    assert client.get("/authorize?username=alice").status_code == 400
    assert client.get("/authorize?code=abc").status_code == 400


def test_index_renders_landing_page(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert "generate-your-own-silly" in resp.get_data(as_text=True)


def test_webhook_success(client, store, session):
    user = store.create("alice", "access", "refresh")
    session.routes[("GET", "/search/movie")] = DummyResponse(MATRIX_SEARCH)
    session.routes[("POST", "/scrobble/stop")] = DummyResponse({"action": "scrobble"}, status_code=201)

    resp = post_webhook(client, user.id, make_webhook_payload(event="media.scrobble"))

    assert resp.status_code == 200
    assert resp.get_json() == "success"


def test_webhook_raw_json_body(client, store, session):
    user = store.create("alice", "access", "refresh")

    resp = client.post(
        f"/api?id={user.id}",
        data=json.dumps(make_webhook_payload(account="someone-else")),
        content_type="application/json",
    )

    assert resp.status_code == 200
    assert session.calls == []


def test_webhook_without_id_is_bad_request(client):
    resp = post_webhook(client, "", make_webhook_payload())
    assert resp.status_code == 400


def test_webhook_without_json_is_bad_request(client, store):
    user = store.create("alice", "access", "refresh")
    resp = client.post(f"/api?id={user.id}", data=b"garbage", content_type="text/plain")
    assert resp.status_code == 400


def test_webhook_for_unknown_id_is_forbidden(client):
    resp = post_webhook(client, "0" * 32, make_webhook_payload())
    assert resp.status_code == 403


def test_webhook_owner_for_unknown_account_is_not_found(client, store):
    user = store.create("alice", "access", "refresh")
    resp = post_webhook(client, user.id, make_webhook_payload(account="carol", owner=True))
    assert resp.status_code == 404
    assert resp.get_json() == "user not found"


def test_webhook_with_failed_refresh_is_unauthorized(client, store, session, make_stale):
    user = store.create("alice", "access", "refresh")
    store._save(make_stale(user))
    session.routes[("POST", "/oauth/token")] = DummyResponse({"error": "invalid_grant"}, status_code=400)

    resp = post_webhook(client, user.id, make_webhook_payload())

    assert resp.status_code == 401
    assert resp.get_json() == "fail"
    assert store.get_by_id(user.id) is None


def test_webhook_with_unresolvable_media_is_not_found(client, store, session):
    user = store.create("alice", "access", "refresh")
    session.routes[("GET", "/search/movie")] = DummyResponse([])

    resp = post_webhook(client, user.id, make_webhook_payload())

    assert resp.status_code == 404
    assert store.get_by_id(user.id) is not None


def test_webhook_with_bad_episode_guid_is_bad_request(client, store):
    user = store.create("alice", "access", "refresh")
    payload = make_webhook_payload(section="show", guid="plex://episode/123")

    assert post_webhook(client, user.id, payload).status_code == 400


def test_webhook_with_trakt_outage_fails(client, store, session):
    user = store.create("alice", "access", "refresh")
    session.routes[("GET", "/search/movie")] = DummyResponse(None, status_code=503, text="down")

    assert post_webhook(client, user.id, make_webhook_payload()).status_code == 502


def test_webhook_with_malformed_trakt_search_is_bad_gateway(client, store, session):
    user = store.create("alice", "access", "refresh")
    session.routes[("GET", "/search/movie")] = DummyResponse(["junk"])

    assert post_webhook(client, user.id, make_webhook_payload()).status_code == 502


def test_healthcheck_ok(client):
    resp = client.get("/healthcheck")
    assert resp.status_code == 200
    assert resp.get_json() == {"status": "OK"}


def test_healthcheck_reports_storage_error(store, trakt):
    store.ping = lambda: (_ for _ in ()).throw(OSError("disk gone"))
    client = app_module.create_app(store=store, trakt=trakt, allowed_hosts=[]).test_client()

    resp = client.get("/healthcheck")

    assert resp.status_code == 503
    assert "disk gone" in resp.get_json()["errors"]["storage"]


def test_allowed_hosts_reject_other_hosts_but_not_healthcheck(tmp_path, trakt):
    flask_app = app_module.create_app(
        store=DiskStore(str(tmp_path)), trakt=trakt, allowed_hosts=["plaxt.example"]
    )
    client = flask_app.test_client()

    assert client.get("/", base_url="http://plaxt.example").status_code == 200
    denied = client.get("/", base_url="http://evil.example")
    assert denied.status_code == 401
    assert denied.get_data(as_text=True) == "Oh no!"
    assert client.get("/healthcheck", base_url="http://evil.example").status_code == 200
