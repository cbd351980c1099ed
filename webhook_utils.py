import logging

from plex_utils import PlexWebhook
from store_utils import Store
from trakt_utils import Trakt, is_stale
from utils import AuthError, NotFoundError, UnknownUserError

logger = logging.getLogger(__name__)


def handle_webhook(
    store: Store, trakt: Trakt, user_id: str, webhook: PlexWebhook, redirect_base: str
) -> str:
    """Scrobble a Plex webhook for the user registered under ``user_id``.

    The owner of a Plex server receives webhooks for every account on it. For
    owner events the account title decides which stored user is scrobbled,
    and events whose account does not match the stored user are dropped.
    """
    logger.info("Webhook call for %s (%s)", user_id, webhook.account_title)

    user = store.get_by_id(user_id)
    if user is None:
        logger.warning("id %s is invalid", user_id)
        raise UnknownUserError(f"unknown id {user_id}")

    username = webhook.username
    if webhook.owner and username != user.username:
        user = store.get_by_username(username)
        if user is None:
            logger.warning("User %s not found", username)
            raise NotFoundError(f"no user named {username}", message="user not found")

    if is_stale(user):
        # Trakt rotates refresh tokens; only one request may spend the old one.
        with store.user_lock(user.id):
            current = store.get_by_id(user.id)
            if current is None:
                raise AuthError(f"{user.username} was removed after a failed refresh")
            user = current
            if is_stale(user):
                logger.info("User access token outdated, refreshing...")
                tokens, ok = trakt.refresh(redirect_base, user.username, user.refresh_token)
                if not ok:
                    logger.warning("Refresh failed, deleting user %s", user.username)
                    store.delete(user.id, user.username)
                    raise AuthError(f"refresh rejected for {user.username}")
                store.update_tokens(user, tokens["access_token"], tokens["refresh_token"])
                logger.info("Refreshed, continuing")

    if username == user.username:
        trakt.handle(webhook, user)
    else:
        logger.info("Plex username %s does not equal %s, skipping", username, user.username)

    return "success"
