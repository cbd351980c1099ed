import pytest

from trakt_utils import get_action


@pytest.mark.parametrize(
    "event, expected",
    [
        ("media.play", ("start", 0)),
        ("media.pause", ("stop", 0)),
        ("media.resume", ("start", 0)),
        ("media.stop", ("stop", 0)),
        ("media.scrobble", ("stop", 90)),
    ],
)
def test_plex_events_map_to_scrobble_actions(event, expected):
    assert get_action(event) == expected


def test_bare_event_names_are_accepted():
    assert get_action("scrobble") == ("stop", 90)
    assert get_action("Play") == ("start", 0)


@pytest.mark.parametrize("event", ["media.rate", "library.new", "", None])
def test_unknown_events_have_no_action(event):
    assert get_action(event) == ("", 0)
