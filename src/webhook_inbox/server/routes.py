from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from loguru import logger

from webhook_inbox.common.errors import SignatureInvalidError, ValidationError
from webhook_inbox.common.metrics import measure_time, metrics
from webhook_inbox.server.dependencies import get_service
from webhook_inbox.server.service import WebhookService

router = APIRouter()


@router.post("")
@measure_time(metrics.webhook_processing_time, {"endpoint": "webhook"})
async def receive_webhook(
    request: Request,
    service: WebhookService = Depends(get_service),
    user_agent: str = Header(None),
    x_webhook_signature: str = Header(None),
):
    body = await request.body()
    source_ip = request.client.host if request.client else None

    try:
        message = await service.ingest(
            body,
            user_agent=user_agent,
            source_ip=source_ip,
            signature=x_webhook_signature,
        )
    except SignatureInvalidError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to store webhook from {source_ip}: {e}")
        raise HTTPException(status_code=500, detail="Internal server error")

    return {
        "success": True,
        "message": "Webhook received successfully",
        "id": message.id,
    }


@router.get("/health")
async def health_check():
    return {
        "status": "ok",
        "endpoint": "webhook",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
