import pytest
import pytest_asyncio

from hearthsync.channel_manager import ChannelManager
from hearthsync.concurrency import KeyedGuard
from hearthsync.sync_engine import SyncEngine
from hearthsync.webhooks import (
    MalformedNotificationError, WebhookIngestor, WebhookNotification, WebhookState,
)

from conftest import RecordingDispatcher


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def manager(settings, db, credentials, client_factory):
    return ChannelManager(settings, db, credentials, client_factory, KeyedGuard('channel'))


@pytest.fixture
def ingestor(settings, db, credentials, client_factory, manager, dispatcher):
    engine = SyncEngine(settings, db, credentials, client_factory, KeyedGuard('sync'))
    return WebhookIngestor(manager, engine, dispatcher)


@pytest_asyncio.fixture
async def channel(manager, remote, calendar_link):
    result = await manager.create_watch_channel(calendar_link.id)
    return result.channel_id, remote.watch_calls[-1]['token']


def headers(channel_id, token, state='exists', number='2'):
    return {
        'X-Goog-Channel-ID': channel_id,
        'X-Goog-Channel-Token': token,
        'X-Goog-Resource-State': state,
        'X-Goog-Resource-ID': 'resource',
        'X-Goog-Message-Number': number,
    }


def test_notification_requires_headers():
    with pytest.raises(MalformedNotificationError, match='X-Goog-Channel-Token'):
        WebhookNotification.from_headers({
            'X-Goog-Channel-ID': 'c',
            'X-Goog-Resource-State': 'exists',
            'X-Goog-Message-Number': '1',
        })


def test_notification_parses_headers():
    notification = WebhookNotification.from_headers(headers('c', 't', number=' 7 '))
    assert notification.message_number == 7
    assert notification.resource_id == 'resource'


def test_missing_header_is_bad_request(ingestor, dispatcher):
    outcome = ingestor.ingest({'X-Goog-Channel-ID': 'c'})

    assert outcome.status_code == 400
    assert outcome.state == WebhookState.REJECTED
    assert dispatcher.dispatched == []


def test_non_integer_message_number_is_bad_request(ingestor):
    outcome = ingestor.ingest(headers('c', 't', number='abc'))
    assert outcome.status_code == 400


@pytest.mark.asyncio
async def test_exists_triggers_background_sync(ingestor, dispatcher, channel, calendar_link):
    channel_id, token = channel

    outcome = ingestor.ingest(headers(channel_id, token))

    assert outcome.state == WebhookState.TRIGGERED
    assert outcome.status_code == 200
    assert outcome.calendar_link_id == calendar_link.id
    assert dispatcher.dispatched == [f"webhook-sync:{calendar_link.id}"]


@pytest.mark.asyncio
async def test_forged_token_is_acknowledged_without_sync(ingestor, dispatcher, channel):
    channel_id, _ = channel

    outcome = ingestor.ingest(headers(channel_id, 'forged'))

    assert outcome.state == WebhookState.REJECTED
    assert outcome.status_code == 200
    assert dispatcher.dispatched == []


def test_unknown_channel_is_acknowledged_without_sync(ingestor, dispatcher):
    outcome = ingestor.ingest(headers('no-such-channel', 'token'))

    assert outcome.state == WebhookState.REJECTED
    assert outcome.status_code == 200
    assert dispatcher.dispatched == []


@pytest.mark.asyncio
async def test_handshake_only_acknowledges(ingestor, dispatcher, channel):
    channel_id, token = channel

    outcome = ingestor.ingest(headers(channel_id, token, state='sync', number='1'))

    assert outcome.state == WebhookState.VALIDATED
    assert dispatcher.dispatched == []


@pytest.mark.asyncio
@pytest.mark.parametrize('state', ['not_exists', 'something_new'])
async def test_other_states_only_acknowledge(ingestor, dispatcher, channel, state):
    channel_id, token = channel

    outcome = ingestor.ingest(headers(channel_id, token, state=state))

    assert outcome.state == WebhookState.VALIDATED
    assert outcome.status_code == 200
    assert dispatcher.dispatched == []


@pytest.mark.asyncio
async def test_duplicate_delivery_is_ignored(ingestor, dispatcher, channel):
    channel_id, token = channel

    first = ingestor.ingest(headers(channel_id, token, number='5'))
    replay = ingestor.ingest(headers(channel_id, token, number='5'))
    stale = ingestor.ingest(headers(channel_id, token, number='4'))

    assert first.state == WebhookState.TRIGGERED
    assert replay.state == WebhookState.VALIDATED
    assert stale.state == WebhookState.VALIDATED
    assert len(dispatcher.dispatched) == 1
