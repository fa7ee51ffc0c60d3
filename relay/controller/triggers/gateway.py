import uuid
from typing import Any, Dict, Mapping, Optional

import httpx

from relay.common.errors import DeliveryError, UnknownTokenError
from relay.common.models.runs import TriggerStatus
from relay.controller.config import WEBHOOK_TIMEOUT_SECONDS
from relay.controller.triggers.dispatcher import TriggerDispatcher
from relay.controller.utils.logger import logger

DELIVERY_HEADER = "X-Relay-Delivery"
# Not passed on to the trigger container
DROPPED_HEADERS = frozenset({
    "host", "content-length", "authorization", "connection", "keep-alive", "proxy-authenticate",
    "proxy-authorization", "te", "trailer", "transfer-encoding", "upgrade", DELIVERY_HEADER.lower(),
})


class EventGateway:
    """
    Forwards webhook payloads to the trigger container registered under a token.
    Events the container emits while handling the request are only committed
    once it answers with a 2xx.
    """

    def __init__(self, dispatcher: TriggerDispatcher, timeout: float = WEBHOOK_TIMEOUT_SECONDS,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.dispatcher = dispatcher
        self.client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self):
        await self.client.aclose()

    async def deliver(self, token: str, body: bytes, headers: Mapping[str, str], query: str = "") -> Dict[str, Any]:
        instance = self.dispatcher.lookup(token)
        if instance is None:
            raise UnknownTokenError()
        if instance.status != TriggerStatus.RUNNING:
            raise DeliveryError(f"Trigger '{instance.trigger_name}' is not running", status_code=503)

        forward = {k: v for k, v in headers.items() if k.lower() not in DROPPED_HEADERS}
        # Held events are keyed by this id, so it is never taken from the caller
        delivery_id = str(uuid.uuid4())
        forward[DELIVERY_HEADER] = delivery_id
        external_id = next((v for k, v in headers.items() if k.lower() == DELIVERY_HEADER.lower()), None)
        url = f"{instance.url}?{query}" if query else instance.url

        log_extra = {
            "workflow": instance.workflow_name, "trigger": instance.trigger_name,
            "instance_id": instance.instance_id, "external_delivery_id": external_id,
        }
        self.dispatcher.begin_delivery(delivery_id)
        committed = False
        try:
            try:
                response = await self.client.post(url, content=body, headers=forward)
            except httpx.TimeoutException:
                logger.warning(f"Delivery {delivery_id} to '{instance.trigger_name}' timed out", extra=log_extra)
                raise DeliveryError("Trigger did not respond in time", status_code=504)
            except httpx.HTTPError as e:
                logger.warning(f"Delivery {delivery_id} to '{instance.trigger_name}' failed: {e}", extra=log_extra)
                raise DeliveryError(f"Trigger unreachable: {e}", status_code=502)

            if response.status_code >= 500:
                raise DeliveryError(
                    f"Trigger answered {response.status_code}", status_code=502, body=_body(response)
                )
            if response.status_code >= 400:
                # The trigger rejected the payload itself
                raise DeliveryError(
                    "Trigger rejected the delivery", status_code=response.status_code, body=_body(response)
                )

            run_ids = await self.dispatcher.end_delivery(delivery_id, success=True)
            committed = True
        finally:
            if not committed:
                await self.dispatcher.end_delivery(delivery_id, success=False)

        logger.info(
            f"Delivery {delivery_id} to '{instance.trigger_name}' accepted, {len(run_ids)} runs",
            extra={"event": "delivery_accepted", **log_extra},
        )
        result = {"delivery_id": delivery_id, "run_ids": run_ids}
        if external_id:
            result["external_delivery_id"] = external_id
        return result


def _body(response: httpx.Response) -> Optional[Dict[str, Any]]:
    try:
        data = response.json()
    except ValueError:
        return {"detail": response.text} if response.text else None
    return data if isinstance(data, dict) else {"detail": data}
