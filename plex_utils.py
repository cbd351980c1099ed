import json
import logging
import re
from typing import Any, Dict, Mapping, Optional, Tuple

from utils import ValidationError, normalize_username, normalize_year

logger = logging.getLogger(__name__)

# ``com.plexapp.agents.thetvdb://121361/3/9?lang=en`` -> ("thetvdb", 121361, 3, 9)
_EPISODE_GUID = re.compile(
    r"^(?:com\.plexapp\.agents\.)?([a-z]+)://(\d+)/(\d+)/(\d+)(?:[?#].*)?$", re.I
)
_JSON_OBJECT = re.compile(r"({.*})", re.S)

# Plex agent names -> Trakt id types used by ``/search/{id_type}/{id}``
GUID_SCHEMES = {
    "thetvdb": "tvdb",
    "tvdb": "tvdb",
    "themoviedb": "tmdb",
    "tmdb": "tmdb",
    "imdb": "imdb",
}


class PlexWebhook:
    """The parts of a Plex webhook event needed for scrobbling."""

    def __init__(self, data: Mapping[str, Any]) -> None:
        self.raw = data
        self.event: str = str(data.get("event") or "")
        account = data.get("Account") or {}
        self.account_title: str = str(account.get("title") or "")
        self.owner: bool = bool(data.get("owner"))
        self.metadata: Dict[str, Any] = dict(data.get("Metadata") or {})

    @property
    def username(self) -> str:
        return normalize_username(self.account_title)

    @property
    def section_type(self) -> str:
        return str(self.metadata.get("librarySectionType") or "").lower()

    @property
    def guid(self) -> str:
        return str(self.metadata.get("guid") or "")

    @property
    def title(self) -> str:
        return str(self.metadata.get("title") or "")

    @property
    def year(self) -> Optional[int]:
        return normalize_year(self.metadata.get("year"))

    def __repr__(self) -> str:
        return f"<PlexWebhook {self.event} {self.section_type} {self.account_title!r}>"


def extract_payload(form_payload: Optional[str], body: bytes) -> Dict[str, Any]:
    """Return the JSON object Plex sends with a webhook.

    Plex posts ``multipart/form-data`` with the event in a ``payload`` field.
    When that field is missing the first ``{...}`` span of the raw body is used.
    """
    text = form_payload
    if not text:
        match = _JSON_OBJECT.search(body.decode("utf-8", errors="replace"))
        if not match:
            raise ValidationError("webhook body contains no JSON object")
        text = match.group(1)
        logger.debug("No payload field in webhook, using JSON from raw body")
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise ValidationError(f"webhook payload is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ValidationError("webhook payload is not a JSON object")
    return data


def parse_webhook(data: Mapping[str, Any]) -> PlexWebhook:
    if not isinstance(data.get("event"), str) or not data["event"]:
        raise ValidationError("webhook payload has no event")
    if not isinstance(data.get("Account") or {}, dict):
        raise ValidationError("webhook Account is not an object")
    if not isinstance(data.get("Metadata") or {}, dict):
        raise ValidationError("webhook Metadata is not an object")
    return PlexWebhook(data)


def parse_episode_guid(guid: str) -> Tuple[str, str, int, int]:
    """Split an episode guid into ``(id_type, show_id, season, episode)``."""
    match = _EPISODE_GUID.match(guid or "")
    if not match:
        raise ValidationError(f"unsupported episode guid {guid!r}")
    agent, show_id, season, episode = match.groups()
    id_type = GUID_SCHEMES.get(agent.lower())
    if id_type is None:
        raise ValidationError(f"unsupported guid agent {agent!r}")
    return id_type, show_id, int(season), int(episode)
