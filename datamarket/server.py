"""Datamarket HTTP services.

Every agent gets:
    GET  /          - info page
    GET  /health    - readiness check
    POST /chat      - {"message": "..."} -> {"text": "..."}

Sellers also get:
    POST /rpc                               - JSON-RPC 2.0 market handshake
    GET  /download/{resource_id}?token=...  - redeem a released access key

Example:
    seller = create_seller(settings)
    serve(create_app(seller), port=7577)
"""

from __future__ import annotations

import asyncio
import html
import json
import time
from typing import Any

import uvicorn
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from .agent import SellerAgent
from .errors import ArtifactExpiredError, InvalidAccessKeyError
from .log import log
from .payments.tokens import decode_payload, find_tokens


async def _access_log(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    elapsed = f"{(time.perf_counter() - start) * 1000:.0f}ms"
    log.http(request.method, request.url.path, response.status_code, elapsed)
    return response


def _log_tokens(message: str, direction: str):
    for token in find_tokens(message):
        payload = decode_payload(token)
        if payload:
            log.debug(f"{direction} JWT payload", payload)
        else:
            log.warn(f"Could not decode {direction.lower()} JWT")


def _info_page(title: str, port: Any, seller: bool) -> str:
    rows = [("POST /chat", "Send messages directly to the agent")]
    if seller:
        rows += [
            ("POST /rpc", "JSON-RPC 2.0 market handshake"),
            ("GET /download/{resource_id}?token=...", "Redeem a released access key"),
        ]
    endpoints = "\n".join(
        f'        <div class="endpoint"><strong>{html.escape(path)}</strong> - {html.escape(text)}</div>'
        for path, text in rows
    )
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Datamarket - {html.escape(title)}</title>
    <style>
        body {{ font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; max-width: 800px; margin: 0 auto; padding: 2rem; background: #f8f9fa; color: #333; }}
        .card {{ background: white; padding: 1.5rem; margin: 1rem 0; border-radius: 8px; box-shadow: 0 2px 4px rgba(0,0,0,0.1); }}
        .endpoint {{ background: #f1f3f4; padding: 0.5rem 1rem; border-radius: 4px; font-family: monospace; margin: 0.5rem 0; }}
        .status {{ display: inline-block; padding: 0.25rem 0.75rem; background: #28a745; color: white; border-radius: 20px; }}
    </style>
</head>
<body>
    <div class="card">
        <h1>🤖 {html.escape(title)}</h1>
        <span class="status">Running on Port {port}</span>
    </div>
    <div class="card">
        <h2>📡 Available Endpoints</h2>
{endpoints}
        <pre>{{"message": "Hello, agent!"}}  ->  {{"text": "Agent response here"}}</pre>
    </div>
</body>
</html>"""


def create_app(agent, title: str | None = None, decode_jwt: bool = True) -> Starlette:
    """Build the Starlette app for a buyer or seller agent.

    Args:
        agent: Anything with `name` and `async chat(message) -> str`
        title: Page title (agent name if omitted)
        decode_jwt: Debug-log decoded tokens found in chat messages
    """
    title = title or agent.name
    seller = isinstance(agent, SellerAgent)

    async def index(request: Request) -> HTMLResponse:
        return HTMLResponse(_info_page(title, request.url.port, seller))

    async def health(request: Request) -> JSONResponse:
        return JSONResponse({"status": "ok", "agent": agent.name})

    async def chat(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Body must be JSON"}, status_code=422)

        message = body.get("message") if isinstance(body, dict) else None
        if not isinstance(message, str) or not message:
            return JSONResponse({"error": "message is required"}, status_code=422)

        log.incoming(f"{title} received", message)
        if decode_jwt:
            _log_tokens(message, "Incoming")

        try:
            text = await agent.chat(message)
        except Exception as e:
            log.error(f"{title} failed", e)
            return JSONResponse({"error": str(e)}, status_code=500)

        log.outgoing(f"{title} replied", text, preview=True)
        if decode_jwt:
            _log_tokens(text, "Outgoing")
        return JSONResponse({"text": text})

    async def rpc(request: Request) -> JSONResponse:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({
                "jsonrpc": "2.0",
                "id": None,
                "error": {"code": -32600, "message": "Invalid request"},
            })
        return JSONResponse(await agent.handle(body))

    async def download(request: Request) -> JSONResponse:
        resource_id = request.path_params["resource_id"]
        try:
            record = agent.redeem(resource_id, request.query_params.get("token", ""))
        except InvalidAccessKeyError as e:
            return JSONResponse(e.to_dict(), status_code=403)
        except ArtifactExpiredError as e:
            return JSONResponse(e.to_dict(), status_code=410)

        return JSONResponse({
            "resource_id": record.resource_id,
            "access": "granted",
            "final_price": float(record.final_price),
            "expires_at": record.expires_at.isoformat(),
        })

    routes = [
        Route("/", index, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
        Route("/chat", chat, methods=["POST"]),
    ]
    if seller:
        routes += [
            Route("/rpc", rpc, methods=["POST"]),
            Route("/download/{resource_id}", download, methods=["GET"]),
        ]

    return Starlette(
        routes=routes,
        middleware=[Middleware(BaseHTTPMiddleware, dispatch=_access_log)],
    )


def banner(name: str, url: str, rows: dict[str, str]):
    """Print the startup box for an agent."""
    lines = [f"║  {key + ':':<8}{str(value)[:52]:<53}║" for key, value in rows.items()]
    print(f"""
╔═══════════════════════════════════════════════════════════════╗
║  🤖 {name[:57]:<57} ║
╠═══════════════════════════════════════════════════════════════╣
║  {'URL:':<8}{url[:52]:<53}║
""" + "\n".join(lines) + """
╚═══════════════════════════════════════════════════════════════╝
""")


def serve(app: Starlette, host: str = "0.0.0.0", port: int = 7577):
    """Run one app with uvicorn (blocking)."""
    uvicorn.run(app, host=host, port=port, log_level="warning")


async def serve_many(apps: list[tuple[Starlette, str, int]]):
    """Run several apps concurrently in the current event loop."""
    servers = [
        uvicorn.Server(uvicorn.Config(app, host=host, port=port, log_level="warning"))
        for app, host, port in apps
    ]
    await asyncio.gather(*(server.serve() for server in servers))
