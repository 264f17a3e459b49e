"""Tests for the Google Calendar client using a stubbed discovery service."""

import asyncio
import json
from datetime import datetime

import httplib2
import pytest
import pytz
from googleapiclient.errors import HttpError

from hearthsync.models import EventStatus
from hearthsync.services.base import (
    AuthenticationError, CalendarNotFoundError, CalendarServiceError, RateLimitError, SyncTokenInvalidError,
)
from hearthsync.services.google import GoogleCalendarClient, parse_google_event, translate_http_error


def http_error(status, reason=None):
    body = {'error': {'code': status, 'message': 'error'}}
    if reason:
        body['error']['errors'] = [{'reason': reason}]
    return HttpError(httplib2.Response({'status': status}), json.dumps(body).encode('utf-8'))


class StubRequest:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error

    def execute(self):
        if self.error is not None:
            raise self.error
        return self.result


class StubService:
    """Mimics the ``events()``/``channels()`` resource chain of the discovery client."""

    def __init__(self, response=None):
        self.response = response or StubRequest({})
        self.calls = []

    def events(self):
        return self

    def channels(self):
        return self

    def list(self, **params):
        self.calls.append(('list', params))
        return self.response

    def watch(self, **params):
        self.calls.append(('watch', params))
        return self.response

    def stop(self, **params):
        self.calls.append(('stop', params))
        return self.response


def make_client(settings, service):
    return GoogleCalendarClient('token', settings, asyncio.Semaphore(2), service=service)


class TestParseGoogleEvent:

    def test_timed_event(self):
        event = parse_google_event({
            'id': 'abc',
            'summary': 'Dentist',
            'start': {'dateTime': '2024-03-01T09:00:00+01:00'},
            'end': {'dateTime': '2024-03-01T10:00:00+01:00'},
            'updated': '2024-02-01T12:00:00.000Z',
            'attendees': [{'email': 'kid@example.com'}],
        })

        assert event.start == datetime(2024, 3, 1, 8, 0, tzinfo=pytz.UTC)
        assert not event.all_day
        assert event.attendees == [{'email': 'kid@example.com', 'displayName': '', 'responseStatus': 'needsAction'}]

    def test_floating_time_uses_event_timezone(self):
        event = parse_google_event({
            'id': 'abc',
            'start': {'dateTime': '2024-07-01T09:00:00', 'timeZone': 'Europe/Madrid'},
            'end': {'dateTime': '2024-07-01T10:00:00', 'timeZone': 'Europe/Madrid'},
        })
        assert event.start == datetime(2024, 7, 1, 7, 0, tzinfo=pytz.UTC)
        assert event.summary == '(No title)'

    def test_all_day_event(self):
        event = parse_google_event({
            'id': 'abc',
            'start': {'date': '2024-03-01'},
            'end': {'date': '2024-03-02'},
        })
        assert event.all_day
        assert event.start == datetime(2024, 3, 1, tzinfo=pytz.UTC)

    def test_cancelled_needs_only_id(self):
        event = parse_google_event({'id': 'gone', 'status': 'cancelled'})
        assert event.status == EventStatus.CANCELLED

    def test_missing_times_is_rejected(self):
        with pytest.raises(ValueError):
            parse_google_event({'id': 'abc', 'start': {}, 'end': {}})


class TestTranslateHttpError:

    @pytest.mark.parametrize('status,reason,expected', [
        (410, None, SyncTokenInvalidError),
        (401, None, AuthenticationError),
        (429, None, RateLimitError),
        (403, 'rateLimitExceeded', RateLimitError),
        (403, 'userRateLimitExceeded', RateLimitError),
        (404, None, CalendarNotFoundError),
    ])
    def test_mapping(self, status, reason, expected):
        error = translate_http_error(http_error(status, reason), 'Listing')
        assert type(error) is expected
        assert error.status_code == status

    def test_forbidden_without_rate_reason_is_generic(self):
        error = translate_http_error(http_error(403, 'forbidden'), 'Listing')
        assert type(error) is CalendarServiceError
        assert error.status_code == 403


@pytest.mark.asyncio
async def test_incremental_listing_uses_sync_token(settings):
    service = StubService(StubRequest({
        'items': [
            {'id': 'gone', 'status': 'cancelled'},
            {'id': 'broken', 'start': {}},
            {'id': 'ok', 'start': {'date': '2024-03-01'}, 'end': {'date': '2024-03-02'}},
        ],
        'nextSyncToken': 'cursor-2',
    }))

    page = await make_client(settings, service).list_events('primary', sync_token='cursor-1', page_token='p2')

    assert [e.id for e in page.items] == ['gone', 'ok']
    assert page.next_sync_token == 'cursor-2'
    assert page.next_page_token is None
    _, params = service.calls[0]
    assert params['syncToken'] == 'cursor-1'
    assert params['pageToken'] == 'p2'
    assert params['showDeleted'] is True
    assert 'timeMin' not in params


@pytest.mark.asyncio
async def test_initial_listing_uses_window(settings):
    service = StubService(StubRequest({'items': [], 'nextPageToken': 'p2'}))
    time_min = datetime(2024, 1, 1, tzinfo=pytz.UTC)

    page = await make_client(settings, service).list_events('primary', time_min=time_min)

    assert page.next_page_token == 'p2'
    _, params = service.calls[0]
    assert params['timeMin'] == time_min.isoformat()
    assert params['singleEvents'] is True
    assert 'syncToken' not in params


@pytest.mark.asyncio
async def test_gone_cursor_raises_sync_token_invalid(settings):
    service = StubService(StubRequest(error=http_error(410)))

    with pytest.raises(SyncTokenInvalidError):
        await make_client(settings, service).list_events('primary', sync_token='stale')


@pytest.mark.asyncio
async def test_watch_events(settings):
    service = StubService(StubRequest({'id': 'chan-1', 'resourceId': 'res-1', 'expiration': '1709283600000'}))
    expiration = datetime(2024, 3, 1, 9, 0, tzinfo=pytz.UTC)

    response = await make_client(settings, service).watch_events(
        'primary', channel_id='chan-1', address='https://hooks.example.com/hook', token='secret',
        expiration=expiration,
    )

    assert response.resource_id == 'res-1'
    assert response.expiration == expiration
    _, params = service.calls[0]
    assert params['body'] == {
        'id': 'chan-1',
        'type': 'web_hook',
        'address': 'https://hooks.example.com/hook',
        'token': 'secret',
        'expiration': '1709283600000',
    }


@pytest.mark.asyncio
async def test_stop_channel(settings):
    service = StubService()

    await make_client(settings, service).stop_channel('chan-1', 'res-1')

    assert service.calls == [('stop', {'body': {'id': 'chan-1', 'resourceId': 'res-1'}})]
