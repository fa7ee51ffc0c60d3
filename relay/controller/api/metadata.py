from fastapi import APIRouter, Depends, Header, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing import Optional

from relay.common.errors import MetadataError
from relay.common.models.runs import EventEmit, LogWrite, OutputWrite

router = APIRouter(prefix="/metadata")
security = HTTPBearer(auto_error=False)

# Injected from main
metadata = None


async def container_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> str:
    if not credentials:
        raise HTTPException(status_code=401, detail="Missing metadata credential")
    return credentials.credentials


def _http_error(e: MetadataError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=str(e))


@router.get("/spec")
async def get_spec(token: str = Depends(container_token)):
    try:
        return {"spec": metadata.get_spec(token)}
    except MetadataError as e:
        raise _http_error(e)


@router.get("/outputs/{step}/{key}")
async def get_output(step: str, key: str, token: str = Depends(container_token)):
    try:
        return {"step": step, "key": key, "value": metadata.get_output(token, step, key)}
    except MetadataError as e:
        raise _http_error(e)


@router.get("/secrets/{name}")
async def get_secret(name: str, token: str = Depends(container_token)):
    try:
        return {"name": name, "value": metadata.get_secret(token, name)}
    except MetadataError as e:
        raise _http_error(e)


@router.post("/outputs/{key}")
async def set_output(key: str, body: OutputWrite, token: str = Depends(container_token)):
    try:
        return await metadata.set_output(token, key, body.value)
    except MetadataError as e:
        raise _http_error(e)


@router.post("/logs")
async def append_log(body: LogWrite, token: str = Depends(container_token)):
    try:
        return await metadata.append_log(token, body.level, body.message)
    except MetadataError as e:
        raise _http_error(e)


@router.post("/events")
async def emit_event(body: EventEmit, token: str = Depends(container_token),
                     x_relay_delivery: Optional[str] = Header(None)):
    try:
        run_ids = await metadata.emit_event(token, body.name, body.parameters, delivery_id=x_relay_delivery)
    except MetadataError as e:
        raise _http_error(e)
    return {"name": body.name, "run_ids": run_ids}
