import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request

from webhook_inbox.common.config import InboxConfig
from webhook_inbox.server.service import WebhookService
from webhook_inbox.server.websocket import BroadcastHub


async def get_config(request: Request) -> InboxConfig:
    return request.app.state.config


async def get_service(request: Request) -> WebhookService:
    return request.app.state.service


async def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


async def require_admin(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> None:
    """Bearer-token guard for the dashboard API. Open when no admin token is configured."""
    token = request.app.state.config.admin_token
    if not token:
        return

    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Access token required")

    provided = authorization[len("Bearer "):].strip()
    if not hmac.compare_digest(provided.encode(), token.encode()):
        raise HTTPException(status_code=401, detail="Invalid access token")
