import json

import pytest

from plex_utils import extract_payload, parse_episode_guid, parse_webhook
from utils import ValidationError

from conftest import make_webhook_payload


def test_payload_form_field_is_preferred():
    data = make_webhook_payload()
    assert extract_payload(json.dumps(data), b"ignored") == data


def test_payload_falls_back_to_json_in_raw_body():
    data = make_webhook_payload(event="media.stop")
    body = (
        b"--boundary\r\nContent-Disposition: form-data; name=\"payload\"\r\n\r\n"
        + json.dumps(data).encode()
        + b"\r\n--boundary--\r\n"
    )
    assert extract_payload(None, body)["event"] == "media.stop"


def test_body_without_json_is_rejected():
    with pytest.raises(ValidationError):
        extract_payload(None, b"no json here")


def test_invalid_json_is_rejected():
    with pytest.raises(ValidationError):
        extract_payload("{not json}", b"")


def test_parse_webhook_reads_account_and_metadata():
    webhook = parse_webhook(make_webhook_payload(account="Alice", owner=True, year="1999"))
    assert webhook.username == "alice"
    assert webhook.owner is True
    assert webhook.section_type == "movie"
    assert webhook.title == "The Matrix"
    assert webhook.year == 1999


def test_parse_webhook_requires_event():
    data = make_webhook_payload()
    del data["event"]
    with pytest.raises(ValidationError):
        parse_webhook(data)


@pytest.mark.parametrize(
    "guid, expected",
    [
        ("com.plexapp.agents.thetvdb://123/2/5?lang=en", ("tvdb", "123", 2, 5)),
        ("thetvdb://81189/1/10", ("tvdb", "81189", 1, 10)),
        ("com.plexapp.agents.themoviedb://1399/3/9?lang=en", ("tmdb", "1399", 3, 9)),
    ],
)
def test_episode_guid_is_split(guid, expected):
    assert parse_episode_guid(guid) == expected


@pytest.mark.parametrize(
    "guid",
    ["plex://episode/5d9c086c46115600200aa2fe", "com.plexapp.agents.thetvdb://123/2", "", "unknown://1/2/3"],
)
def test_unsupported_episode_guids_are_rejected(guid):
    with pytest.raises(ValidationError):
        parse_episode_guid(guid)
