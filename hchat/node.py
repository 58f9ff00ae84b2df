import asyncio
import json
import logging
from typing import Any, Dict, Optional, Sequence

from . import crypto, pow
from .config import ServerConfig
from .framing import FrameError, read_frame, write_frame
from .handlers import (
    INITIATE_PUBLISH_PATH,
    INITIATE_SUBSCRIBE_PATH,
    PUBLISH_PATH,
    SUBSCRIBE_PATH,
    RequestHandler,
)
from . import messages as m
from .protocol import MAX_TOKEN_AGE_MS, PublishProtocol, SubscribeGrant, SubscribeProtocol
from .substrate import AccessManager, PubsubSubstrate, ReplayGuard, local_substrates

"""
node.py — gateway server and client for the hchat handshakes.

Server side: one asyncio TCP server; each connection is a loop of request
frames, each answered independently by RequestHandler. A bad frame or a
dropped peer only ends that connection.

Client side: HchatClient runs the full handshake for an action: sign the
message, ask for a token, wait out the delay while solving the proof of work,
then redeem.
"""

logger = logging.getLogger(__name__)


def build_handler(
    config: ServerConfig,
    pubsub: Optional[PubsubSubstrate] = None,
    access: Optional[AccessManager] = None,
    replay_guard: Optional[ReplayGuard] = None,
) -> RequestHandler:
    """Wire both protocols; falls back to the in-process substrates."""
    if pubsub is None or access is None:
        local_pubsub, local_access = local_substrates(config.pubsub_secret_key)
        pubsub = pubsub or local_pubsub
        access = access or local_access
    return RequestHandler(
        PublishProtocol(config, pubsub, replay_guard=replay_guard),
        SubscribeProtocol(config, access, replay_guard=replay_guard),
    )


class GatewayServer:
    """Serves RequestHandler over length-prefixed JSON frames."""

    def __init__(self, handler: RequestHandler, host: str, port: int) -> None:
        self.handler = handler
        self.host = host
        self.port = port
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        self._server = await asyncio.start_server(self.handle_conn, self.host, self.port)
        # port 0 means "pick one"; report what we got
        self.port = self._server.sockets[0].getsockname()[1]
        addrs = ", ".join(str(sock.getsockname()) for sock in self._server.sockets or [])
        logger.info("Gateway listening on %s", addrs)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def handle_conn(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Per-connection loop: one response frame per request frame."""
        peer = writer.get_extra_info("peername")
        try:
            while True:
                try:
                    frame = await read_frame(reader)
                except FrameError as exc:
                    logger.info("Bad frame from %s: %s", peer, exc)
                    await write_frame(writer, {"status": 400, "body": {"error": "Invalid request"}})
                    break
                if frame is None:
                    break
                status, body = await self.handler.handle(
                    frame.get("method"), frame.get("path"), frame.get("body")
                )
                await write_frame(writer, {"status": status, "body": body})
        except (asyncio.IncompleteReadError, ConnectionError):
            # Peer went away; nothing was committed for it.
            logger.debug("Connection from %s dropped", peer)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass


class GatewayError(Exception):
    """Non-200 answer from the gateway."""

    def __init__(self, status: int, body: Dict[str, Any]) -> None:
        self.status = status
        self.error = body.get("error", "")
        self.reason = body.get("reason")
        super().__init__(f"{status}: {self.error}")


class HchatClient:
    """
    Talks to a GatewayServer as one sender identity.

    Typical usage:
        async with HchatClient(host, port, pub_b64, privkey) as client:
            await client.publish("room1", "hello")
            grant = await client.subscribe(["room1"])
    """

    def __init__(self, host: str, port: int, public_key_b64: str, private_key, *, timeout: float = 30.0) -> None:
        self.host = host
        self.port = port
        self.public_key_b64 = public_key_b64
        self.private_key = private_key
        self.timeout = timeout
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "HchatClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def connect(self) -> None:
        self._reader, self._writer = await asyncio.open_connection(self.host, self.port)

    async def close(self) -> None:
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except ConnectionError:
                pass
            self._writer = self._reader = None

    async def request(self, path: str, body: Dict[str, Any], method: str = "POST") -> Dict[str, Any]:
        """
        Send one request frame and wait for its answer.

        If anything goes wrong between sending and reading the answer, the
        connection is dropped: a late answer must never be read as the reply
        to the next request. The next call reconnects.
        """
        async with self._lock:
            if self._writer is None:
                await self.connect()
            try:
                await write_frame(self._writer, {"method": method, "path": path, "body": body})
                frame = await asyncio.wait_for(read_frame(self._reader), timeout=self.timeout)
            except (Exception, asyncio.CancelledError):
                await self.close()
                raise
            if frame is None:
                await self.close()
                raise ConnectionError("gateway closed the connection")
        status, resp = frame.get("status"), frame.get("body") or {}
        if status != 200:
            raise GatewayError(status, resp)
        return resp

    async def publish(self, channel: str, message: Any) -> None:
        """JSON-encode `message`, sign it, and push it through the handshake."""
        message_json = json.dumps(message, separators=(",", ":"), ensure_ascii=False)
        message_signature = crypto.sign(self.private_key, message_json.encode("utf-8"))
        resp = await self.request(INITIATE_PUBLISH_PATH, {
            "type": m.INITIATE_PUBLISH_REQUEST,
            "senderPublicKey": self.public_key_b64,
            "channel": channel,
            "messageSize": m.js_length(message_json),
            "messageSignature": message_signature,
        })
        token, token_signature = resp["publishToken"], resp["tokenSignature"]
        challenge_response = await self._earn(token)
        await self.request(PUBLISH_PATH, {
            "type": m.PUBLISH_REQUEST,
            "publishToken": token,
            "tokenSignature": token_signature,
            "messageJson": message_json,
            "challengeResponse": challenge_response,
        })

    async def subscribe(self, channels: Sequence[str]) -> SubscribeGrant:
        """Run the subscribe handshake; returns the read grant."""
        wanted = list(channels)
        resp = await self.request(INITIATE_SUBSCRIBE_PATH, {
            "type": m.INITIATE_SUBSCRIBE_REQUEST,
            "channels": wanted,
        })
        token, token_signature = resp["subscribeToken"], resp["tokenSignature"]
        challenge_response = await self._earn(token)
        resp = await self.request(SUBSCRIBE_PATH, {
            "type": m.SUBSCRIBE_REQUEST,
            "subscribeToken": token,
            "tokenSignature": token_signature,
            "challengeResponse": challenge_response,
            "channels": wanted,
        })
        return SubscribeGrant(subscribe_key=resp["pubsubSubscribeKey"], token=resp["pubsubToken"])

    async def _earn(self, token: str) -> str:
        """Solve the token's puzzle off-loop while its delay runs down."""
        policy = json.loads(token)
        difficulty, delay = int(policy["difficulty"]), int(policy["delay"])
        if delay > MAX_TOKEN_AGE_MS:
            raise ValueError(f"token delay {delay}ms exceeds its lifetime")
        loop = asyncio.get_running_loop()
        solution, _ = await asyncio.gather(
            loop.run_in_executor(None, pow.solve, token, difficulty),
            asyncio.sleep(delay / 1000),
        )
        return solution
