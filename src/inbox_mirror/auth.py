"""Authentication helpers for the Gmail API."""

from __future__ import annotations

import logging
from pathlib import Path

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from . import constants
from .errors import AuthExpired
from .gmail_client import GmailClient

logger = logging.getLogger(__name__)


def token_path(address: str) -> Path:
    return constants.TOKEN_DIR / f"{address.strip().lower()}.json"


def get_credentials(address: str, interactive: bool = True) -> Credentials:
    """Return OAuth credentials for one mailbox.

    Loads the cached token for ``address`` when available and refreshes it
    when expired. If no usable token exists and ``interactive`` is set, an
    OAuth browser flow is launched (requires credentials.json at
    CREDENTIALS_PATH). A refresh the provider rejects raises AuthExpired.
    """
    constants.TOKEN_DIR.mkdir(parents=True, exist_ok=True)
    path = token_path(address)

    creds: Credentials | None = None
    if path.exists():
        creds = Credentials.from_authorized_user_file(str(path), constants.SCOPES)

    if creds and creds.expired and creds.refresh_token:
        try:
            creds.refresh(Request())
        except RefreshError as exc:
            raise AuthExpired(f"Gmail connection for {address} expired: {exc}") from exc
    elif not creds or not creds.valid:
        if not interactive:
            raise AuthExpired(f"No valid token for {address}. Run 'inbox-mirror auth {address}'.")
        if not constants.CREDENTIALS_PATH.exists():
            raise FileNotFoundError(
                f"Credentials file not found at {constants.CREDENTIALS_PATH}.\n"
                "Download your OAuth client credentials from the Google Cloud Console "
                "and save them as:\n"
                f"  {constants.CREDENTIALS_PATH}"
            )
        flow = InstalledAppFlow.from_client_secrets_file(str(constants.CREDENTIALS_PATH), constants.SCOPES)
        creds = flow.run_local_server(port=0, login_hint=address)

    path.write_text(creds.to_json())
    return creds


def get_gmail_client(address: str, interactive: bool = False) -> GmailClient:
    """Return an authenticated GmailClient for ``address``."""
    return GmailClient.from_credentials(get_credentials(address, interactive=interactive))


def check_auth(address: str) -> str:
    """Authenticate (interactively if needed) and return the mailbox address Gmail reports."""
    client = GmailClient.from_credentials(get_credentials(address, interactive=True))
    profile = client.profile()
    if profile.address and profile.address != address.strip().lower():
        logger.warning("Token for %s belongs to %s", address, profile.address)
    return profile.address
