import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request, WebSocket
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, RedirectResponse, Response

from mfa_gateway.core.admission import Verdict, decide, wants_json
from mfa_gateway.core.proxy import ForwardError
from mfa_gateway.core.security import audit_log, client_ip
from mfa_gateway.routers.deps import current_session, get_gateway
from mfa_gateway.templates import get_proxy_error_html

logger = logging.getLogger(__name__)

router = APIRouter()

PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]


def _is_upgrade(request: Request) -> bool:
    return request.headers.get("upgrade", "").lower() == "websocket"


def _forward_error_response(request: Request, error: ForwardError) -> Response:
    failure = error.failure
    if wants_json(request.headers.get("accept")):
        return JSONResponse(
            {
                "error": "Proxy Error",
                "message": failure.message,
                "code": failure.name,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
            status_code=failure.status_code,
        )
    return get_proxy_error_html(failure.message, failure.name, failure.status_code)


@router.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
async def proxy_http(request: Request, path: str):
    """Admission gate in front of every non-local HTTP request."""
    gateway = get_gateway(request)
    _, session = current_session(request)
    expects_json = wants_json(request.headers.get("accept"))
    decision = decide(
        request.url.path,
        session,
        gateway.public_paths,
        expects_json=expects_json,
        websocket=_is_upgrade(request),
    )

    if decision.verdict is Verdict.LOCAL:
        raise HTTPException(status_code=404, detail="Not Found")

    if decision.verdict is Verdict.FORWARD:
        if decision.reason == "public path":
            logger.info(f"Proxying public path {request.method} {decision.path} from {client_ip(request)}")
        else:
            logger.debug(f"Proxying authenticated request {request.method} {decision.path} for {session.username}")
        try:
            return await gateway.proxy.forward_http(request, decision.path)
        except ForwardError as e:
            return _forward_error_response(request, e)

    ip_address = client_ip(request)
    logger.warning(f"Unauthorized access attempt: {request.method} {request.url.path} from {ip_address}")
    await run_in_threadpool(
        audit_log, session.username if session else None, "ACCESS_DENIED", decision.verdict.value, ip_address, gateway.db_path
    )
    if _is_upgrade(request):
        return Response(status_code=401)
    if decision.verdict is Verdict.REJECT_UNAUTHORIZED:
        return JSONResponse(
            {"error": "Unauthorized", "message": "Authentication required", "redirectTo": decision.target},
            status_code=401,
        )
    return RedirectResponse(decision.target, status_code=302)


async def _deny_websocket(websocket: WebSocket, status_code: int):
    if "websocket.http.response" in websocket.scope.get("extensions", {}):
        await websocket.send_denial_response(Response(status_code=status_code))
    else:
        await websocket.close(code=1008 if status_code < 500 else 1011)


@router.websocket("/{path:path}")
async def proxy_websocket(websocket: WebSocket, path: str):
    gateway = get_gateway(websocket)
    _, session = current_session(websocket)
    decision = decide(websocket.url.path, session, gateway.public_paths, websocket=True)

    if decision.verdict is not Verdict.FORWARD:
        ip_address = client_ip(websocket)
        logger.warning(f"WebSocket upgrade without authentication: {websocket.url.path} from {ip_address}")
        await run_in_threadpool(
            audit_log, session.username if session else None, "ACCESS_DENIED", "websocket", ip_address, gateway.db_path
        )
        await _deny_websocket(websocket, 404 if decision.verdict is Verdict.LOCAL else 401)
        return

    try:
        upstream = await gateway.proxy.open_websocket(websocket, decision.path)
    except ForwardError as e:
        await _deny_websocket(websocket, e.failure.status_code)
        return

    await websocket.accept(subprotocol=upstream.subprotocol)
    await gateway.proxy.relay_websocket(websocket, upstream)
