"""FastAPI application: cron jobs, push webhooks and user endpoints."""

import logging
import secrets
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Type

from fastapi import Depends, FastAPI, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError

from .auth import AccessPolicy, TrustedHeaderAccessPolicy
from .config import configure_logging, load_settings
from .models import BatchSummary, CalendarLinkUpdate, ExtensionResult, SyncResult
from .recurrence import PatternDefinition
from .runtime import SyncRuntime
from .services.base import HearthsyncError, OperationInProgressError

logger = logging.getLogger(__name__)


def get_runtime(request: Request) -> SyncRuntime:
    return request.app.state.runtime


def get_access_policy(request: Request) -> AccessPolicy:
    return request.app.state.access_policy


def require_cron_secret(request: Request, runtime: SyncRuntime = Depends(get_runtime)) -> None:
    """Check ``Authorization: Bearer <cron_secret>`` in constant time."""
    expected = runtime.settings.cron_secret
    header = request.headers.get('Authorization', '')
    scheme, _, provided = header.partition(' ')
    if (
        not expected
        or scheme.lower() != 'bearer'
        or not provided
        or not secrets.compare_digest(provided.strip().encode('utf-8'), expected.encode('utf-8'))
    ):
        logger.warning(f"Rejected cron request to {request.url.path}")
        raise HTTPException(status_code=401, detail="Unauthorized")


def error_response(status_code: int, code: str, message: str, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={'success': False, 'error': {'code': code, 'message': message}},
        headers=headers,
    )


async def parse_body(request: Request, model: Type[BaseModel]) -> Any:
    """Validate a JSON body against ``model``; an error response when it does not fit."""
    try:
        payload = await request.json()
    except ValueError:
        return error_response(400, 'VALIDATION_ERROR', 'Request body must be JSON')
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        details = '; '.join(
            f"{'.'.join(str(part) for part in error['loc']) or 'body'}: {error['msg']}" for error in e.errors()
        )
        return error_response(400, 'VALIDATION_ERROR', details)


def summary_payload(summary: BatchSummary) -> Dict[str, Any]:
    return {
        'total': summary.total,
        'successful': summary.successful,
        'incomplete': summary.incomplete,
        'failed': summary.failed,
        'skipped': summary.skipped,
    }


def extension_payload(result: ExtensionResult) -> Dict[str, Any]:
    return {
        'patternsExtended': result.patterns_extended,
        'eventsCreated': result.events_created,
        'patternsFailed': result.patterns_failed,
    }


def sync_payload(result: SyncResult) -> Dict[str, Any]:
    return {
        'calendarId': result.calendar_link_id,
        'eventsCreated': result.events_created,
        'eventsUpdated': result.events_updated,
        'eventsDeleted': result.events_deleted,
        'complete': result.complete,
        'coalesced': result.coalesced,
    }


async def run_cron_job(runtime: SyncRuntime, name: str) -> JSONResponse:
    """Run a scheduled job and wrap its outcome in the cron response envelope."""
    try:
        result = await runtime.jobs.run(name)
    except HearthsyncError as e:
        logger.error(f"Cron job {name} failed: {e}")
        return JSONResponse(status_code=500, content={'success': False, 'error': str(e)})
    except Exception as e:
        logger.exception(f"Cron job {name} crashed: {e}")
        return JSONResponse(status_code=500, content={'success': False, 'error': f"Unexpected error: {e}"})

    if isinstance(result, BatchSummary):
        data = summary_payload(result)
    elif isinstance(result, ExtensionResult):
        data = extension_payload(result)
    else:
        data = result
    logger.info(f"Cron job {name} finished: {data}")
    return JSONResponse(content={'success': True, 'data': data})


def create_app(runtime: Optional[SyncRuntime] = None, access_policy: Optional[AccessPolicy] = None) -> FastAPI:
    """Create the application.

    Args:
        runtime: Prebuilt runtime; built from environment settings at startup when omitted
        access_policy: Policy for user endpoints (defaults to trusted proxy headers)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if app.state.runtime is None:
            settings = load_settings()
            configure_logging(settings)
            app.state.runtime = SyncRuntime.from_settings(settings)
        try:
            yield
        finally:
            await app.state.runtime.shutdown()

    app = FastAPI(title="hearthsync", version="1.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.access_policy = access_policy or TrustedHeaderAccessPolicy()

    @app.get("/health")
    async def health(runtime: SyncRuntime = Depends(get_runtime)):
        return {
            "ok": True,
            "background_tasks": runtime.dispatcher.pending,
            "webhooks_enabled": bool(runtime.settings.webhook_address),
        }

    # Scheduled jobs

    @app.get("/api/cron/sync-calendars", dependencies=[Depends(require_cron_secret)])
    async def cron_sync_calendars(runtime: SyncRuntime = Depends(get_runtime)):
        return await run_cron_job(runtime, 'sync-calendars')

    @app.get("/api/cron/renew-channels", dependencies=[Depends(require_cron_secret)])
    async def cron_renew_channels(runtime: SyncRuntime = Depends(get_runtime)):
        return await run_cron_job(runtime, 'renew-channels')

    @app.get("/api/cron/setup-channels", dependencies=[Depends(require_cron_secret)])
    async def cron_setup_channels(runtime: SyncRuntime = Depends(get_runtime)):
        return await run_cron_job(runtime, 'setup-channels')

    @app.get("/api/cron/extend-recurring-events", dependencies=[Depends(require_cron_secret)])
    async def cron_extend_recurring_events(runtime: SyncRuntime = Depends(get_runtime)):
        return await run_cron_job(runtime, 'extend-recurring-events')

    @app.get("/api/cron/cleanup-tokens", dependencies=[Depends(require_cron_secret)])
    async def cron_cleanup_tokens(runtime: SyncRuntime = Depends(get_runtime)):
        return await run_cron_job(runtime, 'cleanup-tokens')

    # Push notifications

    @app.post("/api/webhooks/google-calendar")
    async def google_calendar_webhook(request: Request, runtime: SyncRuntime = Depends(get_runtime)):
        # The remote expects a quick 2xx; the sync itself runs in the background
        outcome = runtime.ingestor.ingest(request.headers)
        return Response(status_code=outcome.status_code)

    @app.get("/api/webhooks/google-calendar")
    async def google_calendar_webhook_reachability():
        return {"status": "ok"}

    # User endpoints

    def authorize(request: Request, family_id: str) -> Any:
        """Return the user id, or an error response."""
        policy = get_access_policy(request)
        user_id = policy.authenticate(request)
        if user_id is None:
            return error_response(401, 'UNAUTHORIZED', 'Authentication required')
        if not policy.is_family_member(request, user_id, family_id):
            return error_response(403, 'FORBIDDEN', 'Not a member of this family')
        return user_id

    def find_link(runtime: SyncRuntime, family_id: str, calendar_id: str):
        with runtime.db.get_session() as session:
            return runtime.db.get_family_calendar_link(session, family_id, calendar_id)

    @app.post("/api/v1/families/{family_id}/calendars/{calendar_id}/sync")
    async def manual_sync(
        family_id: str, calendar_id: str, request: Request, runtime: SyncRuntime = Depends(get_runtime)
    ):
        user_id = authorize(request, family_id)
        if isinstance(user_id, Response):
            return user_id

        limit = runtime.rate_limiter.check(user_id)
        if not limit.allowed:
            retry_after = limit.retry_after(runtime.rate_limiter.clock())
            return error_response(
                429, 'RATE_LIMITED', 'Too many sync requests, try again later',
                headers={'Retry-After': str(retry_after)},
            )

        link = find_link(runtime, family_id, calendar_id)
        if link is None:
            return error_response(404, 'NOT_FOUND', 'Calendar not found')

        if link.sync_cursor:
            result = await runtime.sync_engine.perform_incremental_sync(link.id)
        else:
            result = await runtime.sync_engine.perform_initial_sync(link.id)

        if result.error:
            logger.error(f"Manual sync of {link.id} by {user_id} failed: {result.error}")
            return error_response(500, 'SYNC_ERROR', result.error)
        return {'success': True, 'data': sync_payload(result)}

    @app.get("/api/v1/families/{family_id}/calendars/{calendar_id}/channel")
    async def channel_status(
        family_id: str, calendar_id: str, request: Request, runtime: SyncRuntime = Depends(get_runtime)
    ):
        user_id = authorize(request, family_id)
        if isinstance(user_id, Response):
            return user_id
        if find_link(runtime, family_id, calendar_id) is None:
            return error_response(404, 'NOT_FOUND', 'Calendar not found')
        return {'success': True, 'data': runtime.channel_manager.get_channel_status(calendar_id)}

    @app.post("/api/v1/families/{family_id}/calendars/{calendar_id}/channel")
    async def channel_create(
        family_id: str, calendar_id: str, request: Request, runtime: SyncRuntime = Depends(get_runtime)
    ):
        user_id = authorize(request, family_id)
        if isinstance(user_id, Response):
            return user_id
        if find_link(runtime, family_id, calendar_id) is None:
            return error_response(404, 'NOT_FOUND', 'Calendar not found')

        result = await runtime.channel_manager.create_watch_channel(calendar_id)
        if result.coalesced:
            return error_response(409, 'CHANNEL_BUSY', 'A channel operation is already in progress')
        if not result.success:
            return error_response(500, 'CHANNEL_ERROR', result.error or 'Failed to create channel')
        return {
            'success': True,
            'data': {
                'channelId': result.channel_id,
                'expiration': result.expiration.isoformat() if result.expiration else None,
            },
        }

    @app.delete("/api/v1/families/{family_id}/calendars/{calendar_id}/channel")
    async def channel_stop(
        family_id: str, calendar_id: str, request: Request, runtime: SyncRuntime = Depends(get_runtime)
    ):
        user_id = authorize(request, family_id)
        if isinstance(user_id, Response):
            return user_id
        if find_link(runtime, family_id, calendar_id) is None:
            return error_response(404, 'NOT_FOUND', 'Calendar not found')
        stopped = await runtime.channel_manager.stop_watch_channel(calendar_id)
        return {'success': True, 'data': {'stopped': stopped}}

    @app.patch("/api/v1/families/{family_id}/calendars/{calendar_id}")
    async def calendar_update(
        family_id: str, calendar_id: str, request: Request, runtime: SyncRuntime = Depends(get_runtime)
    ):
        user_id = authorize(request, family_id)
        if isinstance(user_id, Response):
            return user_id
        update = await parse_body(request, CalendarLinkUpdate)
        if isinstance(update, Response):
            return update
        if find_link(runtime, family_id, calendar_id) is None:
            return error_response(404, 'NOT_FOUND', 'Calendar not found')

        runtime.sync_engine.set_sync_enabled(calendar_id, update.sync_enabled)
        return {'success': True, 'data': {'id': calendar_id, 'syncEnabled': update.sync_enabled}}

    @app.delete("/api/v1/families/{family_id}/calendars/{calendar_id}")
    async def calendar_unlink(
        family_id: str, calendar_id: str, request: Request, runtime: SyncRuntime = Depends(get_runtime)
    ):
        user_id = authorize(request, family_id)
        if isinstance(user_id, Response):
            return user_id
        if find_link(runtime, family_id, calendar_id) is None:
            return error_response(404, 'NOT_FOUND', 'Calendar not found')

        try:
            deleted = await runtime.channel_manager.unlink_calendar(calendar_id)
        except OperationInProgressError:
            return error_response(409, 'CHANNEL_BUSY', 'A channel operation is already in progress')
        if not deleted:
            return error_response(404, 'NOT_FOUND', 'Calendar not found')
        logger.info(f"Calendar {calendar_id} unlinked from family {family_id} by {user_id}")
        return {'success': True, 'data': {'deleted': True}}

    @app.post("/api/v1/families/{family_id}/recurring-patterns", status_code=201)
    async def recurring_pattern_create(
        family_id: str, request: Request, runtime: SyncRuntime = Depends(get_runtime)
    ):
        user_id = authorize(request, family_id)
        if isinstance(user_id, Response):
            return user_id
        definition = await parse_body(request, PatternDefinition)
        if isinstance(definition, Response):
            return definition

        result = runtime.extender.create_pattern(family_id, definition)
        return {
            'success': True,
            'data': {
                'id': result.pattern_id,
                'eventsCreated': result.events_created,
                'generatedUntil': result.generated_until.isoformat(),
            },
        }

    return app
