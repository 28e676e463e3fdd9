from datetime import datetime, timezone
from typing import Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from webhook_inbox.common.errors import NotFoundError, ValidationError
from webhook_inbox.common.models import WebhookQuery
from webhook_inbox.server.dependencies import get_hub, get_service, require_admin
from webhook_inbox.server.service import WebhookService
from webhook_inbox.server.websocket import BroadcastHub

T = TypeVar("T")

router = APIRouter(dependencies=[Depends(require_admin)])


async def list_query(
    page: int = Query(1),
    page_size: int = Query(20, alias="pageSize"),
    type: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    processed: Optional[bool] = Query(None),
) -> WebhookQuery:
    if page < 1:
        raise HTTPException(status_code=400, detail="Page must be greater than 0")
    if page_size < 1 or page_size > 100:
        raise HTTPException(status_code=400, detail="Page size must be between 1 and 100")

    try:
        return WebhookQuery(
            page=page,
            page_size=page_size,
            type=type or None,
            search=search or None,
            start_date=start_date or None,
            end_date=end_date or None,
            processed=processed,
        )
    except PydanticValidationError:
        raise HTTPException(status_code=400, detail="Invalid date filter")


async def _run(action: str, call: Awaitable[T]) -> T:
    """Await a service call and map inbox errors onto HTTP responses."""
    try:
        return await call
    except NotFoundError:
        raise HTTPException(status_code=404, detail="Webhook message not found")
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Error {action}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/webhooks")
async def list_webhooks(
    query: WebhookQuery = Depends(list_query),
    service: WebhookService = Depends(get_service),
):
    result = await _run("fetching webhook messages", service.get_messages(query))
    return result.model_dump(mode="json", by_alias=True)


@router.get("/webhooks/stats")
async def webhook_stats(service: WebhookService = Depends(get_service)):
    stats = await _run("fetching webhook stats", service.get_stats())
    return stats.model_dump(mode="json", by_alias=True)


@router.get("/webhooks/search")
async def search_webhooks(
    q: Optional[str] = Query(None),
    query: WebhookQuery = Depends(list_query),
    service: WebhookService = Depends(get_service),
):
    if not q or not q.strip():
        raise HTTPException(status_code=400, detail="Search query is required")

    result = await _run("searching webhook messages", service.search_messages(q, query))
    return result.model_dump(mode="json", by_alias=True)


@router.delete("/webhooks/cleanup")
async def cleanup_webhooks(
    days: int = Query(30),
    service: WebhookService = Depends(get_service),
):
    if days < 1:
        raise HTTPException(status_code=400, detail="Invalid days parameter")

    deleted = await _run("cleaning up webhook messages", service.cleanup_old_messages(days))
    return {
        "success": True,
        "message": f"Cleaned up {deleted} old messages",
        "deletedCount": deleted,
    }


@router.get("/webhooks/{message_id}")
async def get_webhook(message_id: str, service: WebhookService = Depends(get_service)):
    message = await _run("fetching webhook message", service.get_message_by_id(message_id))
    if message is None:
        raise HTTPException(status_code=404, detail="Webhook message not found")
    return message.to_wire()


@router.put("/webhooks/{message_id}/processed")
async def mark_processed(message_id: str, service: WebhookService = Depends(get_service)):
    message = await _run("marking webhook message as processed", service.mark_as_processed(message_id))
    return {
        "success": True,
        "message": "Webhook message marked as processed",
        "data": message.to_wire(),
    }


@router.delete("/webhooks/{message_id}")
async def delete_webhook(message_id: str, service: WebhookService = Depends(get_service)):
    await _run("deleting webhook message", service.delete_message(message_id))
    return {"success": True, "message": "Webhook message deleted successfully"}


@router.get("/storage/health")
async def storage_health(service: WebhookService = Depends(get_service)):
    return await service.get_health_status()


@router.get("/queue/stats")
async def queue_stats(service: WebhookService = Depends(get_service)):
    return service.get_queue_stats()


@router.get("/websocket/info")
async def websocket_info(hub: BroadcastHub = Depends(get_hub)):
    return {
        "connectedClients": hub.connection_count,
        "serverTime": datetime.now(timezone.utc).isoformat(),
    }
