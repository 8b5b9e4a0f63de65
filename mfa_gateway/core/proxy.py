import asyncio
import logging
import time
from enum import Enum
from typing import List, Optional, Tuple

import httpx
from fastapi import Request, WebSocket
from fastapi.responses import StreamingResponse
from fastapi.websockets import WebSocketState
from starlette.background import BackgroundTask
from websockets.asyncio.client import ClientConnection, connect as ws_connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from mfa_gateway.core.security import client_ip

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
})

NO_CACHE_HEADERS = {
    "cache-control": "no-cache, no-store, must-revalidate",
    "pragma": "no-cache",
    "expires": "0",
}

# Forwarded on the upstream WebSocket handshake; the rest is negotiated by the client library.
_WS_FORWARDED_HEADERS = ("authorization", "cookie", "origin", "accept-language")


class ForwardFailure(Enum):
    CONNECTION_REFUSED = (503, "Target service is not available")
    CONNECTION_RESET = (502, "Target service closed the connection unexpectedly")
    TIMEOUT = (504, "Target service timeout")
    GENERIC = (502, "Proxy error occurred")

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message


class ForwardError(Exception):
    def __init__(self, failure: ForwardFailure, cause: BaseException):
        super().__init__(f"{failure.name}: {cause}")
        self.failure = failure
        self.cause = cause


def classify_failure(exc: BaseException) -> ForwardFailure:
    """Map a transport exception onto the gateway's failure categories."""
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ForwardFailure.TIMEOUT
    if isinstance(exc, (httpx.ConnectError, ConnectionRefusedError)):
        return ForwardFailure.CONNECTION_REFUSED
    if isinstance(exc, (httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError, ConnectionResetError)):
        return ForwardFailure.CONNECTION_RESET
    return ForwardFailure.GENERIC


def _forwarded_proto(scheme: str) -> str:
    return "https" if scheme in ("https", "wss") else "http"


class UpstreamProxy:
    """Relays admitted HTTP requests and WebSocket sessions to the upstream target."""

    def __init__(
        self,
        target: str,
        timeout: float = 30.0,
        session_cookie_name: str = "gateway_session",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.target = target.rstrip("/")
        self.timeout = timeout
        self.session_cookie_name = session_cookie_name
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
                follow_redirects=False,
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def upstream_url(self, path: str, query: str = "", websocket: bool = False) -> str:
        base = self.target
        if websocket:
            if base.startswith("https://"):
                base = "wss://" + base[len("https://"):]
            elif base.startswith("http://"):
                base = "ws://" + base[len("http://"):]
        return f"{base}{path}?{query}" if query else f"{base}{path}"

    def _strip_session_cookie(self, cookie_header: str) -> str:
        prefix = f"{self.session_cookie_name}="
        kept = [c.strip() for c in cookie_header.split(";") if c.strip() and not c.strip().startswith(prefix)]
        return "; ".join(kept)

    def _forwarding_headers(self, ip: str, scheme: str, host: str) -> List[Tuple[str, str]]:
        return [
            ("X-Real-IP", ip),
            ("X-Forwarded-For", ip),
            ("X-Forwarded-Proto", _forwarded_proto(scheme)),
            ("X-Forwarded-Host", host),
        ]

    def build_headers(self, request: Request) -> List[Tuple[str, str]]:
        headers: List[Tuple[str, str]] = []
        for name, value in request.headers.items():
            lname = name.lower()
            if lname in HOP_BY_HOP_HEADERS or lname in ("host", "content-length") or lname.startswith("x-forwarded-"):
                continue
            if lname == "cookie":
                value = self._strip_session_cookie(value)
                if not value:
                    continue
            headers.append((name, value))
        headers.extend(self._forwarding_headers(client_ip(request), request.url.scheme, request.headers.get("host", "")))
        return headers

    async def forward_http(self, request: Request, path: Optional[str] = None) -> StreamingResponse:
        """Send ``request`` upstream and stream the answer back.

        Raises ForwardError when the upstream cannot be reached or drops the
        connection before answering.
        """
        path = path or request.url.path
        url = self.upstream_url(path, request.url.query)
        body = await request.body()
        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=self.build_headers(request),
            content=body,
        )
        started = time.monotonic()
        try:
            upstream = await self.client.send(upstream_request, stream=True)
        except httpx.HTTPError as exc:
            failure = classify_failure(exc)
            if failure is ForwardFailure.CONNECTION_REFUSED:
                logger.error(f"Target service connection refused: {request.method} {url} ({exc})")
            else:
                logger.warning(f"Proxy HTTP error {failure.name}: {request.method} {url} ({exc})")
            raise ForwardError(failure, exc) from exc

        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        for name, value in upstream.headers.multi_items():
            if name.lower() not in HOP_BY_HOP_HEADERS:
                response.headers.append(name, value)
        for name, value in NO_CACHE_HEADERS.items():
            response.headers[name] = value

        elapsed_ms = int((time.monotonic() - started) * 1000)
        if upstream.status_code >= 400:
            logger.warning(f"Proxy HTTP response (error) {upstream.status_code}: {request.method} {path} in {elapsed_ms}ms")
        else:
            logger.info(f"Proxy HTTP response {upstream.status_code}: {request.method} {path} in {elapsed_ms}ms")
        return response

    async def open_websocket(self, websocket: WebSocket, path: Optional[str] = None) -> ClientConnection:
        url = self.upstream_url(path or websocket.url.path, websocket.url.query, websocket=True)
        headers = []
        for name in _WS_FORWARDED_HEADERS:
            value = websocket.headers.get(name)
            if name == "cookie" and value:
                value = self._strip_session_cookie(value)
            if value:
                headers.append((name, value))
        headers.extend(self._forwarding_headers(client_ip(websocket), websocket.url.scheme, websocket.headers.get("host", "")))
        subprotocols = [p.strip() for p in websocket.headers.get("sec-websocket-protocol", "").split(",") if p.strip()]

        try:
            upstream = await ws_connect(
                url,
                additional_headers=headers,
                subprotocols=subprotocols or None,
                open_timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError, InvalidHandshake) as exc:
            failure = classify_failure(exc)
            logger.error(f"WebSocket proxy error {failure.name}: {url} ({exc})")
            raise ForwardError(failure, exc) from exc

        logger.info(f"WebSocket upgrade proxied to {url}")
        return upstream

    async def relay_websocket(self, websocket: WebSocket, upstream: ClientConnection):
        """Pump frames both ways until either side closes."""

        async def client_to_upstream():
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    return
                if message.get("text") is not None:
                    await upstream.send(message["text"])
                elif message.get("bytes") is not None:
                    await upstream.send(message["bytes"])

        async def upstream_to_client():
            async for message in upstream:
                if isinstance(message, str):
                    await websocket.send_text(message)
                else:
                    await websocket.send_bytes(message)

        tasks = [asyncio.create_task(client_to_upstream()), asyncio.create_task(upstream_to_client())]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in done:
                exc = task.exception()
                if exc is not None and not isinstance(exc, ConnectionClosed):
                    logger.warning(f"WebSocket relay ended with error: {exc}")
        finally:
            await upstream.close()
            if websocket.application_state == WebSocketState.CONNECTED and websocket.client_state == WebSocketState.CONNECTED:
                await websocket.close()
            logger.debug(f"WebSocket connection closed for {client_ip(websocket)}")

    async def check_health(self, timeout: float = 5.0) -> dict:
        """Probe the upstream ``/health`` endpoint for the status page."""
        error = None
        try:
            response = await self.client.get(f"{self.target}/health", timeout=timeout)
            status = "healthy" if response.status_code < 400 else "unhealthy"
        except httpx.TimeoutException:
            status = "timeout"
        except httpx.HTTPError as exc:
            status = "unreachable"
            error = str(exc)
        return {"status": status, "error": error}
