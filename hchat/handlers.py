"""
handlers.py — the request boundary in front of the two protocols.

Every request is a (method, path, body) triple and every answer a
(status, body) pair, whatever carries them. Shape problems get a generic
"Invalid request" so nothing about the expected schema leaks; protocol
rejections carry their reason; nothing escapes to take the process down.
"""

import logging
from typing import Any, Dict, Tuple

from . import messages as m
from .errors import InvalidRequestShape, ProtocolError
from .protocol import PublishProtocol, SubscribeProtocol

logger = logging.getLogger(__name__)

Response = Tuple[int, Dict[str, Any]]

INITIATE_PUBLISH_PATH = "/api/initiatePublish"
PUBLISH_PATH = "/api/publish"
INITIATE_SUBSCRIBE_PATH = "/api/initiateSubscribe"
SUBSCRIBE_PATH = "/api/subscribe"


class RequestHandler:
    """Routes requests to the publish/subscribe protocols."""

    def __init__(self, publish: PublishProtocol, subscribe: SubscribeProtocol) -> None:
        self.publish = publish
        self.subscribe = subscribe
        self._routes = {
            INITIATE_PUBLISH_PATH: self._initiate_publish,
            PUBLISH_PATH: self._publish,
            INITIATE_SUBSCRIBE_PATH: self._initiate_subscribe,
            SUBSCRIBE_PATH: self._subscribe,
        }

    async def handle(self, method: str, path: str, body: Any) -> Response:
        # path comes straight off the wire and may be any JSON value
        route = self._routes.get(path) if isinstance(path, str) else None
        if route is None:
            return 404, {"error": "Not found"}
        if method != "POST":
            return 405, {"error": "Method not allowed"}
        try:
            return 200, await route(body)
        except ProtocolError as exc:
            logger.info("Rejected %s: %s", path, exc.reason)
            return exc.status, {"error": str(exc), "reason": exc.reason}
        except Exception:
            logger.exception("Unhandled error in %s", path)
            return 500, {"error": "Internal error"}

    # -----------------------
    # Routes
    # -----------------------

    async def _initiate_publish(self, body: Any) -> Dict[str, Any]:
        _require(body, m.INITIATE_PUBLISH_REQUEST)
        envelope = await self.publish.initiate_publish(
            sender_public_key=body["senderPublicKey"],
            channel=body["channel"],
            message_size=body["messageSize"],
            message_signature=body["messageSignature"],
        )
        return {
            "type": m.INITIATE_PUBLISH_RESPONSE,
            "publishToken": envelope.token,
            "tokenSignature": envelope.token_signature,
        }

    async def _publish(self, body: Any) -> Dict[str, Any]:
        _require(body, m.PUBLISH_REQUEST)
        await self.publish.publish(
            token=body["publishToken"],
            token_signature=body["tokenSignature"],
            message_json=body["messageJson"],
            challenge_response=body["challengeResponse"],
        )
        return {"type": m.PUBLISH_RESPONSE, "success": True}

    async def _initiate_subscribe(self, body: Any) -> Dict[str, Any]:
        _require(body, m.INITIATE_SUBSCRIBE_REQUEST)
        envelope = await self.subscribe.initiate_subscribe(body["channels"])
        return {
            "type": m.INITIATE_SUBSCRIBE_RESPONSE,
            "subscribeToken": envelope.token,
            "tokenSignature": envelope.token_signature,
        }

    async def _subscribe(self, body: Any) -> Dict[str, Any]:
        _require(body, m.SUBSCRIBE_REQUEST)
        grant = await self.subscribe.subscribe(
            token=body["subscribeToken"],
            token_signature=body["tokenSignature"],
            challenge_response=body["challengeResponse"],
            channels=body["channels"],
        )
        return {
            "type": m.SUBSCRIBE_RESPONSE,
            "pubsubSubscribeKey": grant.subscribe_key,
            "pubsubToken": grant.token,
        }


def _require(body: Any, request_type: str) -> None:
    if not m.is_request(body, request_type):
        raise InvalidRequestShape()
