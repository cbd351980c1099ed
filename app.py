#!/usr/bin/env python3
"""
PlexyScrobble – Scrobbles Plex playback to Trakt through Plex webhooks.

• One Trakt authorization per Plex account, kept on disk, in Redis or in PostgreSQL
• Access tokens are refreshed two months after they were issued
• Webhooks sent to the server owner are routed to the account that played the item
"""

import logging
import os
import secrets
from typing import List, Optional

from flask import Flask, jsonify, render_template, request
from werkzeug.middleware.proxy_fix import ProxyFix

from plex_utils import extract_payload, parse_webhook
from store_utils import HEALTH_CHECK_TIMEOUT, Store, create_store
from trakt_utils import APP_NAME, APP_VERSION, Trakt
from utils import ScrobbleError, ValidationError, normalize_username, parse_allowed_hosts
from webhook_utils import handle_webhook

# --------------------------------------------------------------------------- #
# LOGGING
# --------------------------------------------------------------------------- #
root_logger = logging.getLogger()
root_logger.setLevel(logging.INFO)

for handler in root_logger.handlers[:]:
    root_logger.removeHandler(handler)

console_handler = logging.StreamHandler()
console_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
root_logger.addHandler(console_handler)

logger = logging.getLogger(__name__)

# Flask's request log is noisy with one line per webhook
logging.getLogger("werkzeug").setLevel(logging.WARNING)

# --------------------------------------------------------------------------- #
# CONFIGURATION
# --------------------------------------------------------------------------- #
TRAKT_CLIENT_ID = os.environ.get("TRAKT_CLIENT_ID") or os.environ.get("TRAKT_ID", "")
TRAKT_CLIENT_SECRET = os.environ.get("TRAKT_CLIENT_SECRET") or os.environ.get("TRAKT_SECRET", "")
# REDIRECT_URI is the legacy name of the allow-list
ALLOWED_HOSTNAMES = os.environ.get("REDIRECT_URI") or os.environ.get("ALLOWED_HOSTNAMES", "")
LISTEN = os.environ.get("LISTEN", "0.0.0.0:8000")
EXAMPLE_WEBHOOK_ID = "generate-your-own-silly"


def self_root() -> str:
    """Return the external root URL of the current request."""
    return request.url_root.rstrip("/")


def create_app(
    store: Optional[Store] = None,
    trakt: Optional[Trakt] = None,
    allowed_hosts: Optional[List[str]] = None,
) -> Flask:
    """Build the Flask application.

    The store is created before the Trakt client and both are fixed for the
    life of the app.
    """
    app = Flask(__name__)
    # Honor X-Forwarded headers so request.url_root matches the public address.
    app.wsgi_app = ProxyFix(app.wsgi_app, x_proto=1, x_host=1)
    app.secret_key = os.environ.get("FLASK_SECRET_KEY") or secrets.token_hex(16)

    if store is None:
        store = create_store()
    if trakt is None:
        trakt = Trakt(TRAKT_CLIENT_ID, TRAKT_CLIENT_SECRET)
    if not trakt.client_id or not trakt.client_secret:
        logger.warning("TRAKT_CLIENT_ID or TRAKT_CLIENT_SECRET is not set; authorization will fail")
    app.config["STORE"] = store
    app.config["TRAKT"] = trakt

    hosts = parse_allowed_hosts(ALLOWED_HOSTNAMES) if allowed_hosts is None else allowed_hosts
    if hosts:
        logger.info("Allowed hostnames: %s", hosts)

        @app.before_request
        def check_allowed_host():
            if request.path == "/healthcheck":
                return None
            if request.host.lower() not in hosts:
                logger.warning("Rejected request for host %s", request.host)
                return "Oh no!", 401, {"Content-Type": "text/plain"}
            return None

    @app.errorhandler(ScrobbleError)
    def scrobble_error(exc: ScrobbleError):
        logger.warning("%s (%s): %s", exc.__class__.__name__, exc.status_code, exc)
        return jsonify(exc.message), exc.status_code

    def render_page(authorized: bool, url: str, error: Optional[str] = None):
        return render_template(
            "index.html",
            app_name=APP_NAME,
            version=APP_VERSION,
            self_root=self_root(),
            authorized=authorized,
            url=url,
            client_id=trakt.client_id,
            error=error,
        )

    @app.route("/", methods=["GET"])
    def index():
        return render_page(False, f"{self_root()}/api?id={EXAMPLE_WEBHOOK_ID}")

    @app.route("/authorize", methods=["GET"])
    def authorize():
        username = normalize_username(request.args.get("username"))
        code = request.args.get("code", "").strip()
        if not username or not code:
            return render_page(False, "", error="Missing username or authorization code."), 400

        logger.info("Handling auth request for %s", username)
        tokens, ok = trakt.exchange_code(self_root(), username, code)
        if not ok:
            return render_page(False, "", error="Trakt did not accept the authorization code."), 401

        user = store.create(username, tokens["access_token"], tokens["refresh_token"])
        logger.info("Authorized as %s", user.id)
        return render_page(True, f"{self_root()}/api?id={user.id}")

    @app.route("/api", methods=["POST"])
    def api():
        user_id = request.args.get("id", "").strip()
        if not user_id:
            raise ValidationError("webhook URL has no id")
        # read the raw body first; form parsing then reuses the cached bytes
        body = request.get_data()
        data = extract_payload(request.form.get("payload"), body)
        webhook = parse_webhook(data)
        return jsonify(handle_webhook(store, trakt, user_id, webhook, self_root()))

    @app.route("/healthcheck", methods=["GET"])
    def healthcheck():
        error = store.health_check(HEALTH_CHECK_TIMEOUT)
        if error:
            logger.error("Health check failed: %s", error)
            return jsonify({"status": "Service Unavailable", "errors": {"storage": error}}), 503
        return jsonify({"status": "OK"})

    return app


# --------------------------------------------------------------------------- #
# MAIN
# --------------------------------------------------------------------------- #
if __name__ == "__main__":
    logger.info("Starting %s %s", APP_NAME, APP_VERSION)
    host, _, port = LISTEN.rpartition(":")
    application = create_app()
    logger.info("Started on %s!", LISTEN)
    # Disable Flask's auto-reloader to avoid duplicate logs
    application.run(host=host or "0.0.0.0", port=int(port or 8000), threaded=True, use_reloader=False)
