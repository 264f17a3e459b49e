"""Access token provisioning for linked accounts."""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from ..config import Settings
from ..database import DatabaseManager
from ..models import ensure_utc, utcnow

logger = logging.getLogger(__name__)

# Tokens expiring within this margin are refreshed before use
EXPIRY_BUFFER = timedelta(minutes=5)


class CredentialProvider(ABC):
    """Source of valid access tokens for linked accounts."""

    @abstractmethod
    async def get_valid_access_token(self, account_id: str) -> Optional[str]:
        """Return a usable access token, or None when the account cannot be authenticated."""
        pass


class DatabaseCredentialProvider(CredentialProvider):
    """Reads tokens from the linked_accounts table and refreshes them with Google OAuth."""

    def __init__(self, settings: Settings, db: DatabaseManager):
        self.settings = settings
        self.db = db
        self.logger = logger.getChild('database')

    async def get_valid_access_token(self, account_id: str) -> Optional[str]:
        with self.db.get_session() as session:
            account = self.db.get_account(session, account_id)
            if account is None:
                self.logger.warning(f"No linked account {account_id}")
                return None
            access_token = account.access_token
            refresh_token = account.refresh_token
            expires_at = account.access_token_expires_at

        if access_token and expires_at and ensure_utc(expires_at) - EXPIRY_BUFFER > utcnow():
            return access_token
        if access_token and expires_at is None:
            # Expiry unknown; let the remote reject it if it is stale
            return access_token

        if not refresh_token:
            self.logger.warning(f"Account {account_id} has an expired token and no refresh token")
            return None
        if not self.settings.google_client_id or not self.settings.google_client_secret:
            self.logger.error("Cannot refresh access tokens: GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET not set")
            return None

        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=self.settings.google_token_uri,
            client_id=self.settings.google_client_id,
            client_secret=self.settings.google_client_secret,
        )
        try:
            await asyncio.get_event_loop().run_in_executor(None, lambda: credentials.refresh(Request()))
        except (RefreshError, TransportError) as e:
            self.logger.error(f"Failed to refresh access token for account {account_id}: {e}")
            return None

        # google-auth reports naive UTC expiry
        new_expiry = ensure_utc(credentials.expiry) if credentials.expiry else None
        with self.db.get_session() as session:
            self.db.update_account_tokens(
                session,
                account_id,
                access_token=credentials.token,
                expires_at=new_expiry,
                refresh_token=credentials.refresh_token if credentials.refresh_token != refresh_token else None,
            )
        self.logger.info(f"Refreshed access token for account {account_id}")
        return credentials.token
