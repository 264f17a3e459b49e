from datetime import datetime, timedelta

import pytest
from google.auth.exceptions import RefreshError
from google.oauth2.credentials import Credentials

from hearthsync.models import ensure_utc, utcnow
from hearthsync.services.tokens import DatabaseCredentialProvider

from conftest import make_settings


@pytest.fixture
def provider(settings, db):
    return DatabaseCredentialProvider(settings, db)


def add_account(db, **fields):
    with db.get_session() as session:
        return db.create_account(session, **fields).id


def stored(db, account_id):
    with db.get_session() as session:
        return db.get_account(session, account_id)


@pytest.fixture
def refreshed(monkeypatch):
    """Make Credentials.refresh succeed without network access."""
    calls = []

    def fake_refresh(self, request):
        calls.append(self.refresh_token)
        self.token = 'fresh-token'
        self.expiry = datetime.utcnow() + timedelta(hours=1)

    monkeypatch.setattr(Credentials, 'refresh', fake_refresh)
    return calls


@pytest.mark.asyncio
async def test_valid_token_is_returned_without_refresh(provider, db, refreshed):
    account_id = add_account(db, access_token='stored', refresh_token='r', expires_at=utcnow() + timedelta(hours=1))

    assert await provider.get_valid_access_token(account_id) == 'stored'
    assert refreshed == []


@pytest.mark.asyncio
async def test_token_with_unknown_expiry_is_used_as_is(provider, db, refreshed):
    account_id = add_account(db, access_token='stored')

    assert await provider.get_valid_access_token(account_id) == 'stored'
    assert refreshed == []


@pytest.mark.asyncio
async def test_token_near_expiry_is_refreshed_and_persisted(provider, db, refreshed):
    account_id = add_account(db, access_token='old', refresh_token='r', expires_at=utcnow() + timedelta(minutes=2))

    assert await provider.get_valid_access_token(account_id) == 'fresh-token'
    assert refreshed == ['r']

    account = stored(db, account_id)
    assert account.access_token == 'fresh-token'
    assert ensure_utc(account.access_token_expires_at) > utcnow() + timedelta(minutes=55)
    assert account.refresh_token == 'r'


@pytest.mark.asyncio
async def test_expired_without_refresh_token(provider, db, refreshed):
    account_id = add_account(db, access_token='old', expires_at=utcnow() - timedelta(hours=1))

    assert await provider.get_valid_access_token(account_id) is None
    assert refreshed == []


@pytest.mark.asyncio
async def test_unknown_account(provider):
    assert await provider.get_valid_access_token('missing') is None


@pytest.mark.asyncio
async def test_refresh_failure_returns_none(provider, db, monkeypatch):
    def failing_refresh(self, request):
        raise RefreshError('invalid_grant')

    monkeypatch.setattr(Credentials, 'refresh', failing_refresh)
    account_id = add_account(db, access_token='old', refresh_token='revoked', expires_at=utcnow())

    assert await provider.get_valid_access_token(account_id) is None
    assert stored(db, account_id).access_token == 'old'


@pytest.mark.asyncio
async def test_refresh_requires_client_credentials(tmp_path, db, refreshed):
    provider = DatabaseCredentialProvider(make_settings(tmp_path, google_client_id=None), db)
    account_id = add_account(db, refresh_token='r', expires_at=utcnow())

    assert await provider.get_valid_access_token(account_id) is None
    assert refreshed == []
