"""
FastAPI front end for the audit service.

Endpoints:
  - GET|POST /audit?url=<url>&fmt=<pretty|html|json>
    - Runs lighthouse against a fresh headless renderer and returns its output
      with the content type of the requested format (html by default).
    - 400 if url is missing, 500 with a plain-text error on any failure,
      503 when too many audits are already queued.
  - GET /_ah/start, /_ah/stop, /_ah/health
    - Liveness probes, 200 with an empty body.

To run the server:
    python -m headless_audit.server --port 8080
"""

import argparse
import asyncio
import logging
import threading
from typing import Dict, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import PlainTextResponse, Response
from starlette.concurrency import run_in_threadpool

from .config import Settings, load_settings
from .errors import AuditServiceError
from .log_config import setup_logging
from .orchestrator import Orchestrator, parse_request

logger = logging.getLogger(__name__)

# How often an in-flight audit checks whether the client is still connected.
DISCONNECT_POLL_SECONDS = 0.5

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


def cors_headers(origin: Optional[str]) -> Dict[str, str]:
    if not origin:
        return {}
    return {
        "Access-Control-Allow-Origin": origin,
        "Access-Control-Allow-Credentials": "true",
        "Access-Control-Allow-Methods": "GET, OPTIONS",
        "Access-Control-Max-Age": "3600",
    }


async def read_params(request: Request) -> Dict[str, str]:
    """Query parameters, overridden by form fields for form-encoded POSTs."""
    params = dict(request.query_params)
    content_type = request.headers.get("content-type", "")
    if request.method == "POST" and content_type.startswith(FORM_CONTENT_TYPES):
        form = await request.form()
        params.update({k: v for k, v in form.items() if isinstance(v, str)})
    return params


async def watch_disconnect(request: Request, cancel: threading.Event) -> None:
    """Set `cancel` once the client goes away."""
    while not cancel.is_set():
        if await request.is_disconnected():
            logger.info(f"Client disconnected, cancelling audit of {request.url}")
            cancel.set()
            return
        await asyncio.sleep(DISCONNECT_POLL_SECONDS)


def create_app(settings: Optional[Settings] = None, orchestrator: Optional[Orchestrator] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Service configuration; read from the environment if omitted.
        orchestrator: Pre-built orchestrator, mainly for tests.
    """
    settings = settings or load_settings()
    orchestrator = orchestrator or Orchestrator(settings)

    app = FastAPI(title="Headless Audit", version="1.0.0")
    app.state.orchestrator = orchestrator

    @app.api_route("/audit", methods=["GET", "POST"])
    async def audit(request: Request) -> Response:
        """Run lighthouse-cli and respond with its stdout."""
        headers = cors_headers(request.headers.get("origin"))
        params = await read_params(request)

        try:
            audit_request = parse_request(params.get("url"), params.get("fmt"))
        except AuditServiceError as e:
            return PlainTextResponse(e.message, status_code=e.status_code, headers=headers)

        cancel = threading.Event()
        watcher = asyncio.create_task(watch_disconnect(request, cancel))
        try:
            outcome = await run_in_threadpool(orchestrator.audit, audit_request, cancel)
        except AuditServiceError as e:
            return PlainTextResponse(e.message, status_code=e.status_code, headers=headers)
        finally:
            cancel.set()
            watcher.cancel()

        return Response(content=outcome.payload, media_type=outcome.mime_type, headers=headers)

    @app.get("/_ah/start")
    @app.get("/_ah/stop")
    @app.get("/_ah/health")
    async def ok() -> Response:
        return Response(status_code=200)

    return app


def main(argv=None) -> None:
    parser = argparse.ArgumentParser(description="Lighthouse audit server backed by headless renderers")
    parser.add_argument("--host", default="0.0.0.0", help="Interface to listen on")
    parser.add_argument("--port", type=int, default=8080, help="Port to listen on")
    parser.add_argument("--env-file", default=None, help="Optional .env file with settings")
    args = parser.parse_args(argv)

    settings = load_settings(args.env_file)
    setup_logging(settings.log_level)
    logger.info(
        f"Starting audit server on {args.host}:{args.port} "
        f"(max {settings.max_concurrent} concurrent, {settings.max_queued} queued)"
    )
    uvicorn.run(create_app(settings), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
