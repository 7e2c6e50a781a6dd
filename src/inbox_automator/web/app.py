"""FastAPI application exposing the automation triggers."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import asdict
from pathlib import Path
from typing import Any, TypeVar

from fastapi import Depends, FastAPI, HTTPException, status as http_status
from fastapi.routing import APIRoute

from inbox_automator.core import AppSettings, load_app_settings
from inbox_automator.core.datetime_utils import serialize_datetime
from inbox_automator.core.interfaces import (
    AccountNotFoundError,
    AutomationError,
    ProviderAuthError,
    ProviderError,
)
from inbox_automator.core.models import Account, ProcessingLog
from inbox_automator.engine.factory import build_automation_service, build_container
from inbox_automator.engine.service import AutomationService
from inbox_automator.storage import SqliteRepository
from inbox_automator.storage.connection_pool import ConnectionPool

LOGGER = logging.getLogger(__name__)

DEFAULT_LOG_LIMIT = 20
MAX_LOG_LIMIT = 100

T = TypeVar("T")


def create_app(settings: AppSettings | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = settings or load_app_settings(env_file=_resolve_env_file())
    app = FastAPI(title="Inbox Automator")

    connection_pool = ConnectionPool(app_settings.storage, pool_size=5)
    container = build_container(app_settings)

    # Accounts with a sync in flight; a second trigger is rejected.
    sync_lock = asyncio.Lock()
    syncing: set[str] = set()

    async def get_repository() -> AsyncIterator[SqliteRepository]:
        async with connection_pool.acquire_async(timeout=10.0) as repository:
            yield repository

    async def run_with_service(operation: Callable[[AutomationService], T]) -> T:
        async with connection_pool.acquire_async(timeout=10.0) as repository:
            service = build_automation_service(container, repository)
            return await asyncio.to_thread(operation, service)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close pooled connections and provider sessions on shutdown."""
        connection_pool.close()
        for connector in container.connectors().values():
            close = getattr(connector, "close", None)
            if callable(close):
                close()
        LOGGER.info("Connection pool closed")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "ok" if not connection_pool.is_closed else "closed",
            "idleConnections": connection_pool.size,
        }

    @app.post("/api/accounts/{account_id}/sync")
    async def trigger_sync(account_id: str) -> dict[str, Any]:
        """Sync one account, sweep it and drain its owner's queue."""
        async with sync_lock:
            if account_id in syncing:
                raise HTTPException(
                    status_code=http_status.HTTP_409_CONFLICT,
                    detail=f"Sync already running for account {account_id}",
                )
            syncing.add(account_id)
        try:
            summary = await run_with_service(
                lambda service: service.trigger_sync(account_id)
            )
        except AutomationError as exc:
            raise _to_http_error(exc) from exc
        finally:
            async with sync_lock:
                syncing.discard(account_id)
        return {"success": True, "accountId": account_id, **asdict(summary)}

    @app.post("/api/users/{user_id}/queue/drain")
    async def drain_queue(user_id: str) -> dict[str, Any]:
        """Classify and act on every pending message of a user."""
        try:
            report = await run_with_service(
                lambda service: service.drain_queue(user_id)
            )
        except AutomationError as exc:
            raise _to_http_error(exc) from exc
        return {"success": True, "userId": user_id, "drain": asdict(report)}

    @app.post("/api/messages/{message_id}/retry")
    async def retry_message(message_id: str) -> dict[str, Any]:
        """Return a failed message to the pending queue."""
        requeued = await run_with_service(
            lambda service: service.retry_message(message_id)
        )
        if not requeued:
            raise HTTPException(
                status_code=http_status.HTTP_409_CONFLICT,
                detail=f"Message {message_id} is not in a failed state",
            )
        return {"success": True, "messageId": message_id}

    @app.get("/api/accounts/{account_id}")
    async def account_detail(
        account_id: str,
        repository: SqliteRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        account = repository.get_account(account_id)
        if account is None:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"Account {account_id} not found",
            )
        return {
            "account": _serialize_account(account),
            "messages": repository.count_messages_by_status(account_id),
        }

    @app.get("/api/accounts/{account_id}/logs")
    async def account_logs(
        account_id: str,
        limit: int = DEFAULT_LOG_LIMIT,
        repository: SqliteRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        if repository.get_account(account_id) is None:
            raise HTTPException(
                status_code=http_status.HTTP_404_NOT_FOUND,
                detail=f"Account {account_id} not found",
            )
        bounded = max(1, min(limit, MAX_LOG_LIMIT))
        logs = repository.list_processing_logs(account_id, limit=bounded)
        return {"logs": [_serialize_log(log) for log in logs]}

    @app.get("/api/runs/{run_id}/events")
    async def run_events(
        run_id: str,
        repository: SqliteRepository = Depends(get_repository),  # noqa: B008
    ) -> dict[str, Any]:
        events = repository.list_events(run_id=run_id)
        return {
            "events": [
                {
                    "id": event.id,
                    "type": event.event_type,
                    "state": event.agent_state,
                    "details": event.details,
                    "messageId": event.message_id,
                    "createdAt": serialize_datetime(event.created_at),
                }
                for event in events
            ]
        }

    _ensure_route_names(app)
    return app


def _to_http_error(exc: AutomationError) -> HTTPException:
    if isinstance(exc, AccountNotFoundError):
        code = http_status.HTTP_404_NOT_FOUND
    elif isinstance(exc, (ProviderAuthError, ProviderError)):
        code = http_status.HTTP_502_BAD_GATEWAY
    else:
        code = http_status.HTTP_500_INTERNAL_SERVER_ERROR
    LOGGER.warning("Request failed with %s: %s", code, exc)
    return HTTPException(status_code=code, detail=str(exc))


def _ensure_route_names(app: FastAPI) -> None:
    """Assign names to routes if absent for better URL reversing."""
    for route in app.router.routes:
        if isinstance(route, APIRoute) and route.name is None:
            route.name = route.path_format.replace("/", ":") or "root"


def _serialize_account(account: Account) -> dict[str, Any]:
    return {
        "id": account.id,
        "userId": account.user_id,
        "provider": account.provider,
        "emailAddress": account.email_address,
        "syncCheckpoint": account.sync_checkpoint,
        "syncStartDate": serialize_datetime(account.sync_start_date),
        "maxMessagesPerRun": account.max_messages_per_run,
        "lastSyncAt": serialize_datetime(account.last_sync_at),
        "lastSyncStatus": account.last_sync_status,
        "lastSyncError": account.last_sync_error,
        "isActive": account.is_active,
    }


def _serialize_log(log: ProcessingLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "status": log.status,
        "startedAt": serialize_datetime(log.started_at),
        "completedAt": serialize_datetime(log.completed_at),
        "emailsProcessed": log.emails_processed,
        "emailsDeleted": log.emails_deleted,
        "emailsDrafted": log.emails_drafted,
        "errors": log.errors,
        "errorMessage": log.error_message,
    }


def _resolve_env_file() -> Path | None:
    candidate = Path.cwd() / ".env"
    return candidate if candidate.exists() else None


__all__ = ["create_app"]
