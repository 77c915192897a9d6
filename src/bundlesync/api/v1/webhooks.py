"""Commerce webhook endpoint.

Responds 401 for a bad signature, 400 for a payload that fails its topic
schema, and 200 for everything else, including duplicates and topics we do
not handle. Processing happens after the response on the background pool.
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status

from src.bundlesync.webhooks.receiver import ReceiveStatus, WebhookReceiver

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


def _get_webhook_receiver(request: Request) -> WebhookReceiver:
    """Retrieve WebhookReceiver from app.state, 503 if not available."""
    receiver = getattr(request.app.state, "webhook_receiver", None)
    if receiver is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook receiver not initialized",
        )
    return receiver


@router.post("/commerce")
async def receive_commerce_webhook(request: Request) -> dict:
    receiver = _get_webhook_receiver(request)
    body = await request.body()
    result = await receiver.receive(
        body,
        request.headers,
        remote_addr=request.client.host if request.client else None,
    )

    if result.status == ReceiveStatus.UNAUTHORIZED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )
    if result.status == ReceiveStatus.MALFORMED:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Malformed {result.topic} payload: {result.detail}",
        )
    return {"status": result.status.value, "topic": result.topic}
