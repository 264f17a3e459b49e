import pytest

from hearthsync.models import EventPage
from hearthsync.services.base import RateLimitError, SyncTokenInvalidError
from hearthsync.sync_engine import SyncEngine

from conftest import RecordingBroadcaster, StaticCredentialProvider, cancelled, make_event


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def engine(settings, db, credentials, client_factory, guard, broadcaster):
    return SyncEngine(settings, db, credentials, client_factory, guard, broadcaster)


def load_link(db, link_id):
    with db.get_session() as session:
        return db.get_calendar_link(session, link_id)


async def seed(engine, remote, link_id, *events, cursor='cursor-1'):
    remote.queue(EventPage(items=list(events), next_sync_token=cursor))
    result = await engine.perform_initial_sync(link_id)
    assert result.succeeded
    return result


@pytest.mark.asyncio
async def test_initial_sync_stores_events_and_cursor(engine, remote, db, calendar_link):
    remote.queue(EventPage(items=[make_event('e1'), make_event('e2')], next_sync_token='cursor-1'))

    result = await engine.perform_initial_sync(calendar_link.id)

    assert result.error is None
    assert result.complete
    assert result.events_created == 2
    assert result.cursor == 'cursor-1'

    call = remote.list_calls[0]
    assert call['calendar_id'] == 'primary'
    assert call['sync_token'] is None
    assert call['time_min'] < call['time_max']

    link = load_link(db, calendar_link.id)
    assert link.sync_cursor == 'cursor-1'
    assert link.pagination_token is None
    assert link.last_synced_at is not None
    with db.get_session() as session:
        assert db.count_local_events(session, calendar_link.id) == 2


@pytest.mark.asyncio
async def test_initial_sync_skips_cancelled_and_status_events(engine, remote, db, calendar_link):
    remote.queue(EventPage(
        items=[make_event('e1'), cancelled('gone'), make_event('focus', event_type='focusTime')],
        next_sync_token='cursor-1',
    ))

    result = await engine.perform_initial_sync(calendar_link.id)

    assert result.events_created == 1
    with db.get_session() as session:
        assert db.count_local_events(session, calendar_link.id) == 1
        assert db.get_local_event(session, calendar_link.id, 'focus') is None


@pytest.mark.asyncio
async def test_page_limit_checkpoints_and_resumes(engine, remote, db, calendar_link):
    remote.queue(
        EventPage(items=[make_event('e1')], next_page_token='page-2'),
        EventPage(items=[make_event('e2')], next_page_token='page-3'),
    )

    first = await engine.perform_initial_sync(calendar_link.id)

    assert first.error is None
    assert not first.complete
    assert first.events_created == 2
    link = load_link(db, calendar_link.id)
    assert link.pagination_token == 'page-3'
    assert link.sync_cursor is None

    remote.queue(EventPage(items=[make_event('e3')], next_sync_token='cursor-1'))
    second = await engine.perform_incremental_sync(calendar_link.id)

    assert second.complete
    assert second.events_created == 1
    assert remote.list_calls[-1]['page_token'] == 'page-3'
    assert remote.list_calls[-1]['sync_token'] is None
    link = load_link(db, calendar_link.id)
    assert link.sync_cursor == 'cursor-1'
    assert link.pagination_token is None


@pytest.mark.asyncio
async def test_explicit_max_pages_overrides_configured_limit(engine, remote, calendar_link):
    remote.queue(
        EventPage(items=[make_event('e1')], next_page_token='page-2'),
        EventPage(items=[make_event('e2')], next_page_token='page-3'),
    )

    result = await engine.perform_initial_sync(calendar_link.id, max_pages=1)

    assert not result.complete
    assert len(remote.list_calls) == 1
    assert remote.responses  # second page left untouched


@pytest.mark.asyncio
async def test_incremental_does_not_resume_full_listing_page(engine, remote, db, calendar_link):
    await seed(engine, remote, calendar_link.id, make_event('e1'))

    # A full resync of an already synced link stops after one page
    remote.queue(EventPage(items=[make_event('e1')], next_page_token='window-page-2'))
    paused = await engine.perform_initial_sync(calendar_link.id, max_pages=1)
    assert not paused.complete
    link = load_link(db, calendar_link.id)
    assert (link.sync_cursor, link.pagination_token, link.pagination_mode) == ('cursor-1', 'window-page-2', 'full')

    remote.queue(EventPage(items=[], next_sync_token='cursor-2'))
    result = await engine.perform_incremental_sync(calendar_link.id)

    assert result.complete
    call = remote.list_calls[-1]
    assert call['sync_token'] == 'cursor-1'
    assert call['page_token'] is None
    link = load_link(db, calendar_link.id)
    assert (link.sync_cursor, link.pagination_token, link.pagination_mode) == ('cursor-2', None, None)


@pytest.mark.asyncio
async def test_full_sync_does_not_resume_incremental_page(engine, remote, db, calendar_link):
    await seed(engine, remote, calendar_link.id, make_event('e1'))

    remote.queue(EventPage(items=[make_event('e2')], next_page_token='delta-page-2'))
    paused = await engine.perform_incremental_sync(calendar_link.id, max_pages=1)
    assert not paused.complete
    assert load_link(db, calendar_link.id).pagination_mode == 'incremental'

    remote.queue(EventPage(items=[make_event('e1'), make_event('e2')], next_sync_token='cursor-full'))
    result = await engine.perform_initial_sync(calendar_link.id)

    assert result.complete
    call = remote.list_calls[-1]
    assert call['page_token'] is None
    assert call['sync_token'] is None
    assert call['time_min'] is not None

    # Resuming the same kind of listing still continues from its page token
    remote.queue(EventPage(items=[], next_page_token='delta-page-2'))
    await engine.perform_incremental_sync(calendar_link.id, max_pages=1)
    remote.queue(EventPage(items=[], next_sync_token='cursor-next'))
    await engine.perform_incremental_sync(calendar_link.id)
    assert remote.list_calls[-1]['page_token'] == 'delta-page-2'
    assert remote.list_calls[-1]['sync_token'] == 'cursor-full'


@pytest.mark.asyncio
async def test_incremental_sync_applies_updates_and_deletions(engine, remote, db, calendar_link):
    await seed(engine, remote, calendar_link.id, make_event('e1'), make_event('e2'))

    remote.queue(EventPage(
        items=[make_event('e1', summary='Renamed'), cancelled('e2'), cancelled('never-seen')],
        next_sync_token='cursor-2',
    ))
    result = await engine.perform_incremental_sync(calendar_link.id)

    assert result.error is None
    assert result.events_created == 0
    assert result.events_updated == 1
    assert result.events_deleted == 1
    assert remote.list_calls[-1]['sync_token'] == 'cursor-1'
    assert remote.list_calls[-1]['time_min'] is None

    with db.get_session() as session:
        assert db.get_local_event(session, calendar_link.id, 'e1').title == 'Renamed'
        assert db.get_local_event(session, calendar_link.id, 'e2') is None
    assert load_link(db, calendar_link.id).sync_cursor == 'cursor-2'


@pytest.mark.asyncio
async def test_identical_event_is_not_counted(engine, remote, calendar_link):
    await seed(engine, remote, calendar_link.id, make_event('e1'))

    remote.queue(EventPage(items=[make_event('e1')], next_sync_token='cursor-2'))
    result = await engine.perform_incremental_sync(calendar_link.id)

    assert result.total_changes == 0


@pytest.mark.asyncio
async def test_incremental_without_cursor_runs_initial_sync(engine, remote, calendar_link):
    remote.queue(EventPage(items=[make_event('e1')], next_sync_token='cursor-1'))

    result = await engine.perform_incremental_sync(calendar_link.id)

    assert result.events_created == 1
    assert remote.list_calls[0]['sync_token'] is None
    assert remote.list_calls[0]['time_min'] is not None


@pytest.mark.asyncio
async def test_invalidated_cursor_falls_back_to_full_sync(engine, remote, db, calendar_link):
    await seed(engine, remote, calendar_link.id, make_event('e1'))

    remote.queue(
        SyncTokenInvalidError("gone", 410),
        EventPage(items=[make_event('e1'), make_event('e3')], next_sync_token='cursor-fresh'),
    )
    result = await engine.perform_incremental_sync(calendar_link.id)

    assert result.error is None
    assert result.complete
    assert result.events_created == 1
    assert result.cursor == 'cursor-fresh'
    assert remote.list_calls[-2]['sync_token'] == 'cursor-1'
    assert remote.list_calls[-1]['sync_token'] is None
    assert load_link(db, calendar_link.id).sync_cursor == 'cursor-fresh'


@pytest.mark.asyncio
async def test_unknown_calendar_reports_error(engine, remote):
    result = await engine.perform_incremental_sync('missing')

    assert result.error == "Calendar not found"
    assert remote.list_calls == []


@pytest.mark.asyncio
async def test_missing_token_mutates_nothing(settings, db, client_factory, guard, remote, calendar_link):
    engine = SyncEngine(settings, db, StaticCredentialProvider(token=None), client_factory, guard)

    result = await engine.perform_initial_sync(calendar_link.id)

    assert result.error
    assert remote.list_calls == []
    link = load_link(db, calendar_link.id)
    assert link.sync_cursor is None
    assert link.last_synced_at is None


@pytest.mark.asyncio
async def test_remote_failure_keeps_committed_pages(engine, remote, db, calendar_link):
    remote.queue(
        EventPage(items=[make_event('e1')], next_page_token='page-2'),
        RateLimitError("slow down", 429),
    )

    result = await engine.perform_initial_sync(calendar_link.id)

    assert result.error == "slow down"
    assert result.events_created == 1
    link = load_link(db, calendar_link.id)
    assert link.pagination_token == 'page-2'
    assert link.sync_cursor is None
    with db.get_session() as session:
        assert db.count_local_events(session, calendar_link.id) == 1


@pytest.mark.asyncio
async def test_last_page_without_cursor_is_an_error(engine, remote, db, calendar_link):
    remote.queue(EventPage(items=[make_event('e1')]))

    result = await engine.perform_initial_sync(calendar_link.id)

    assert result.error
    assert not result.complete
    assert load_link(db, calendar_link.id).sync_cursor is None
    with db.get_session() as session:
        assert db.count_local_events(session, calendar_link.id) == 0


@pytest.mark.asyncio
async def test_concurrent_sync_is_coalesced(engine, remote, guard, calendar_link):
    async with guard.hold(calendar_link.id) as acquired:
        assert acquired
        result = await engine.perform_incremental_sync(calendar_link.id)

    assert result.coalesced
    assert not result.complete
    assert result.error is None
    assert remote.list_calls == []


@pytest.mark.asyncio
async def test_changes_are_broadcast_to_family(engine, remote, broadcaster, calendar_link):
    await seed(engine, remote, calendar_link.id, make_event('e1'))

    assert broadcaster.sent == [(
        'private-family-family-1',
        'calendar-synced',
        {'calendarLinkId': calendar_link.id, 'created': 1, 'updated': 0, 'deleted': 0},
    )]

    remote.queue(EventPage(items=[], next_sync_token='cursor-2'))
    await engine.perform_incremental_sync(calendar_link.id)
    assert len(broadcaster.sent) == 1


@pytest.mark.asyncio
async def test_calendars_needing_sync(engine, remote, db, calendar_link):
    with db.get_session() as session:
        disabled = db.create_calendar_link(
            session, family_id='family-1', account_id=calendar_link.account_id,
            remote_calendar_id='other', sync_enabled=False,
        )

    due = [link.id for link in engine.get_calendars_needing_sync()]
    assert due == [calendar_link.id]
    assert disabled.id not in due

    await seed(engine, remote, calendar_link.id, make_event('e1'))
    assert engine.get_calendars_needing_sync() == []
