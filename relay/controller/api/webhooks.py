from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from relay.common.errors import DeliveryError

router = APIRouter(prefix="/webhooks")

# Injected from main
gateway = None


@router.post("/{registration_token}")
async def receive_webhook(registration_token: str, request: Request):
    """Public entry point; the registration token is the only credential."""
    body = await request.body()
    try:
        result = await gateway.deliver(
            registration_token, body, request.headers, query=request.url.query
        )
    except DeliveryError as e:
        return JSONResponse(status_code=e.status_code, content=e.body or {"detail": str(e)})
    return JSONResponse(status_code=202, content=result)
