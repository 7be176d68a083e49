import json
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from orderflow.common.logging_setup import get_logger
from orderflow.common.utils import build_success
from orderflow.db.dependencies import get_reconciler, get_session
from orderflow.payments.services import PaymentReconciler
from orderflow.payments.utils import verify_signature

logger = get_logger("orderflow.webhooks")

SIGNATURE_HEADER = "X-Gateway-Signature"

webhooks_router = APIRouter()


def _ignored(note: str) -> JSONResponse:
    # 200 so the gateway stops redelivering payloads we will never accept
    return JSONResponse({"status": "ok", "note": f"ignored: {note}"}, status_code=200)


@webhooks_router.post("/gateway")
async def gateway_webhook(request: Request,
    session: AsyncSession = Depends(get_session),
    reconciler: PaymentReconciler = Depends(get_reconciler)):

    body = await request.body()
    secret = getattr(request.app.state, "webhook_secret", None)
    if secret:
        sig = request.headers.get(SIGNATURE_HEADER)
        if not sig:
            logger.error("gateway_webhook.missing_signature")
            return _ignored("missing signature")
        if not verify_signature(secret, body, sig):
            logger.error("gateway_webhook.invalid_signature")
            return _ignored("invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("gateway_webhook.bad_payload")
        return _ignored("malformed payload")
    if not isinstance(payload, dict):
        return _ignored("malformed payload")

    result = await reconciler.handle_gateway_callback(session, payload)
    if result is None:
        return _ignored("no matching payment")
    return JSONResponse(build_success(result), status_code=200)
