import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from urllib.parse import quote

import requests

from plex_utils import PlexWebhook, parse_episode_guid
from store_utils import User
from utils import NotFoundError, TransportError

logger = logging.getLogger(__name__)

APP_NAME = "PlexyScrobble"
APP_VERSION = "v1.0.0"
USER_AGENT = f"{APP_NAME} / {APP_VERSION}"
TRAKT_API = "https://api.trakt.tv"
REQUEST_TIMEOUT = 30

DEFAULT_REFRESH_AFTER_DAYS = 60


def _refresh_after_days(value: Optional[str]) -> int:
    if not value:
        return DEFAULT_REFRESH_AFTER_DAYS
    try:
        days = int(value)
    except ValueError:
        days = 0
    if days <= 0:
        logger.warning(
            "Invalid TRAKT_REFRESH_AFTER_DAYS %r, using %s", value, DEFAULT_REFRESH_AFTER_DAYS
        )
        return DEFAULT_REFRESH_AFTER_DAYS
    return days


# Trakt tokens stay valid for three months; refresh after two.
REFRESH_AFTER = timedelta(days=_refresh_after_days(os.environ.get("TRAKT_REFRESH_AFTER_DAYS")))

# Plex event -> (scrobble action, progress percent)
ACTIONS: Dict[str, Tuple[str, int]] = {
    "play": ("start", 0),
    "pause": ("stop", 0),
    "resume": ("start", 0),
    "stop": ("stop", 0),
    "scrobble": ("stop", 90),
}


def get_action(event: str) -> Tuple[str, int]:
    """Return the scrobble action and progress for a Plex event.

    ``media.play`` and ``play`` are treated the same. Unknown events map to
    ``("", 0)``.
    """
    name = (event or "").strip().lower()
    if name.startswith("media."):
        name = name[len("media."):]
    return ACTIONS.get(name, ("", 0))


def is_stale(
    user: User, now: Optional[datetime] = None, threshold: timedelta = REFRESH_AFTER
) -> bool:
    now = now or datetime.now(timezone.utc)
    return now - user.updated_at > threshold


class Trakt:
    """Client for the Trakt endpoints used to scrobble Plex events.

    One instance is created at start-up and shared by every request.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        session: Optional[requests.Session] = None,
        api_url: str = TRAKT_API,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.api_url = api_url.rstrip("/")

    def _headers(self, access_token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "trakt-api-version": "2",
            "trakt-api-key": self.client_id,
        }
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        return headers

    def trakt_request(
        self, method: str, endpoint: str, access_token: Optional[str] = None, **kwargs
    ) -> requests.Response:
        url = f"{self.api_url}{endpoint}"
        try:
            return self.session.request(
                method,
                url,
                headers=self._headers(access_token),
                timeout=REQUEST_TIMEOUT,
                **kwargs,
            )
        except requests.RequestException as exc:
            logger.error("Trakt request %s %s failed: %s", method, endpoint, exc)
            raise TransportError(f"{method} {endpoint}: {exc}") from exc

    def _get_json(self, endpoint: str, **kwargs) -> Any:
        resp = self.trakt_request("GET", endpoint, **kwargs)
        if resp.status_code >= 400:
            raise TransportError(f"GET {endpoint} returned {resp.status_code}")
        try:
            return resp.json()
        except ValueError as exc:
            raise TransportError(f"GET {endpoint} returned invalid JSON") from exc

    # ------------------------------------------------------------------- #
    # OAUTH
    # ------------------------------------------------------------------- #
    def auth_request(
        self,
        redirect_base: str,
        username: str,
        code: str,
        refresh_token: str,
        grant_type: str,
    ) -> Tuple[Dict[str, Any], bool]:
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "redirect_uri": f"{redirect_base.rstrip('/')}/authorize?username={quote(username, safe='')}",
            "grant_type": grant_type,
        }
        if code:
            payload["code"] = code
        if refresh_token:
            payload["refresh_token"] = refresh_token
        try:
            resp = self.session.post(
                f"{self.api_url}/oauth/token",
                json=payload,
                headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
                timeout=REQUEST_TIMEOUT,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Trakt %s request for %s failed: %s", grant_type, username, exc)
            return {}, False

        if not isinstance(data, dict) or not data.get("access_token") or not data.get("refresh_token"):
            logger.error("Trakt %s response for %s has no tokens", grant_type, username)
            return {}, False
        return data, True

    def exchange_code(self, redirect_base: str, username: str, code: str) -> Tuple[Dict[str, Any], bool]:
        return self.auth_request(redirect_base, username, code, "", "authorization_code")

    def refresh(self, redirect_base: str, username: str, refresh_token: str) -> Tuple[Dict[str, Any], bool]:
        return self.auth_request(redirect_base, username, "", refresh_token, "refresh_token")

    # ------------------------------------------------------------------- #
    # CATALOG LOOKUP
    # ------------------------------------------------------------------- #
    @staticmethod
    def _object(value: Any, endpoint: str) -> Dict[str, Any]:
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise TransportError(f"GET {endpoint} returned a malformed {type(value).__name__} entry")
        return value

    def find_episode(self, webhook: PlexWebhook) -> Dict[str, Any]:
        """Resolve the Trakt episode for a ``show`` library event."""
        id_type, show_id, season_number, episode_number = parse_episode_guid(webhook.guid)
        logger.info(
            "Finding show for %s %s S%02dE%02d", id_type, show_id, season_number, episode_number
        )

        search = f"/search/{id_type}/{show_id}"
        results = self._get_json(search, params={"type": "show"})
        if not isinstance(results, list) or not results:
            raise NotFoundError(f"no Trakt show for {id_type}://{show_id}", message="media not found")
        # first match wins
        show = self._object(self._object(results[0], search).get("show"), search)
        trakt_id = self._object(show.get("ids"), search).get("trakt")
        if trakt_id is None:
            raise NotFoundError(f"search result for {id_type}://{show_id} has no Trakt id", message="media not found")

        endpoint = f"/shows/{trakt_id}/seasons"
        seasons = self._get_json(endpoint, params={"extended": "episodes"})
        for season in seasons if isinstance(seasons, list) else []:
            season = self._object(season, endpoint)
            if season.get("number") != season_number:
                continue
            episodes = season.get("episodes")
            for episode in episodes if isinstance(episodes, list) else []:
                episode = self._object(episode, endpoint)
                if episode.get("number") == episode_number:
                    return episode
        raise NotFoundError(
            f"S{season_number:02d}E{episode_number:02d} not found for show {trakt_id}",
            message="media not found",
        )

    def find_movie(self, webhook: PlexWebhook) -> Dict[str, Any]:
        """Resolve the Trakt movie for a ``movie`` library event."""
        title, year = webhook.title, webhook.year
        logger.info("Finding movie for %s (%s)", title, year)
        results = self._get_json("/search/movie", params={"query": title})
        for result in results if isinstance(results, list) else []:
            movie = self._object(self._object(result, "/search/movie").get("movie"), "/search/movie")
            if movie.get("year") == year:
                return movie
        raise NotFoundError(f"no Trakt movie for {title} ({year})", message="media not found")

    # ------------------------------------------------------------------- #
    # SCROBBLE
    # ------------------------------------------------------------------- #
    def scrobble_request(self, action: str, body: Dict[str, Any], access_token: str) -> bytes:
        endpoint = f"/scrobble/{action}"
        resp = self.trakt_request("POST", endpoint, access_token=access_token, json=body)
        if resp.status_code == 409:
            logger.info("Trakt already has this scrobble: %s", resp.text[:200])
        elif resp.status_code >= 400:
            logger.error("Trakt scrobble %s failed %s: %s", action, resp.status_code, resp.text[:200])
            raise TransportError(f"POST {endpoint} returned {resp.status_code}")
        return resp.content

    def handle(self, webhook: PlexWebhook, user: User) -> Optional[bytes]:
        """Scrobble one Plex event for ``user``; returns Trakt's answer."""
        action, progress = get_action(webhook.event)
        if not action:
            logger.info("Ignoring %s event", webhook.event)
            return None

        body: Dict[str, Any] = {"progress": progress, "app_version": APP_VERSION}
        if webhook.section_type == "show":
            body["episode"] = self.find_episode(webhook)
        elif webhook.section_type == "movie":
            body["movie"] = self.find_movie(webhook)
        else:
            logger.info("Ignoring %s from %s library", webhook.event, webhook.section_type or "unknown")
            return None

        result = self.scrobble_request(action, body, user.access_token)
        logger.info("Event logged: %s %s%% for %s", action, progress, user.username)
        return result
