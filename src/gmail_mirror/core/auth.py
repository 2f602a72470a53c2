"""Load cached Gmail credentials and build thread-safe API services.

Token acquisition is owned by the account registration flow; this module only
reads the authorized-user token it left behind and refreshes it when needed.
"""

from __future__ import annotations

import logging
from pathlib import Path

import google_auth_httplib2
import httplib2
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import Resource, build
from googleapiclient.http import HttpRequest

from gmail_mirror.config.settings import GmailMirrorSettings
from gmail_mirror.core.exceptions import AuthExpiredError
from gmail_mirror.core.gmail_client import GmailClient

logger = logging.getLogger(__name__)


def load_credentials(token_path: Path) -> Credentials:
    """Load an authorized-user token, refreshing it if it has expired.

    Args:
        token_path: Path to the cached token JSON for one account.

    Returns:
        Valid Google OAuth2 credentials.

    Raises:
        AuthExpiredError: If the token is missing, unreadable or cannot be refreshed.
    """
    if not token_path.exists():
        raise AuthExpiredError(f"No cached token at {token_path}; reconnect the account")

    try:
        creds = Credentials.from_authorized_user_file(str(token_path))
    except (ValueError, OSError) as e:
        raise AuthExpiredError(f"Cached token at {token_path} is unreadable: {e}") from e

    if creds.valid:
        return creds

    if creds.expired and creds.refresh_token:
        try:
            creds.refresh(google_auth_httplib2.Request(httplib2.Http()))
        except RefreshError as e:
            raise AuthExpiredError(f"Token refresh failed: {e}") from e
        _save_token(creds, token_path)
        logger.info("Refreshed token cached at %s", token_path)
        return creds

    raise AuthExpiredError(f"Token at {token_path} is invalid and has no refresh token")


def build_gmail_service(creds: Credentials) -> Resource:
    """Build a Gmail API service resource safe to share across threads.

    httplib2.Http is not thread-safe, so every request gets its own
    authorized transport.

    Args:
        creds: Valid Google OAuth2 credentials.

    Returns:
        Gmail API service resource.
    """

    def _request_builder(http, *args, **kwargs):
        new_http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http())
        return HttpRequest(new_http, *args, **kwargs)

    authorized_http = google_auth_httplib2.AuthorizedHttp(creds, http=httplib2.Http())
    return build(
        "gmail",
        "v1",
        http=authorized_http,
        requestBuilder=_request_builder,
        cache_discovery=False,
    )


def _save_token(creds: Credentials, token_path: Path) -> None:
    """Save credentials to the token cache file."""
    token_path.parent.mkdir(parents=True, exist_ok=True)
    token_path.write_text(creds.to_json())


class TokenFileClientFactory:
    """Creates a GmailClient per account from ``<tokens_dir>/<account_id>.json``."""

    def __init__(self, settings: GmailMirrorSettings) -> None:
        self._settings = settings

    def token_path(self, account_id: str) -> Path:
        return self._settings.tokens_dir / f"{account_id}.json"

    def __call__(self, account_id: str) -> GmailClient:
        creds = load_credentials(self.token_path(account_id))
        service = build_gmail_service(creds)
        return GmailClient(
            service,
            max_retries=self._settings.max_retries,
            initial_backoff_seconds=self._settings.initial_backoff_seconds,
            max_backoff_seconds=self._settings.max_backoff_seconds,
            inter_page_delay_seconds=self._settings.inter_page_delay_seconds,
            num_retries=self._settings.num_retries,
        )
