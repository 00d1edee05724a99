"""Starlette application exposing the receipt dashboard API and progress stream"""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, date
from typing import Optional

from starlette.applications import Starlette
from starlette.responses import Response
from starlette.routing import Route, WebSocketRoute
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware

from . import __version__
from .config import ReceiptflowConfig, get_config
from .database_factory import DatabaseFactory
from .errors import AuthError, OperationInProgressError, ParseError, StorageError
from .identity import LocalIdentityProvider
from .local_cache import LocalCache
from .statistics import TIME_FILTERS
from .sync_orchestrator import SyncOrchestrator
from .websocket_handler import ProgressBroadcaster, ProgressStreamEndpoint, progress_payload

logger = logging.getLogger(__name__)


def custom_json_response(data, status_code=200):
    """Create a JSON response with datetime serialization"""
    def custom_encoder(obj):
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        raise TypeError(repr(obj) + " is not JSON serializable")

    json_str = json.dumps(data, default=custom_encoder)
    return Response(json_str, media_type="application/json", status_code=status_code)


def error_response(message: str, status_code: int):
    return custom_json_response({"error": message}, status_code=status_code)


async def _json_body(request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise ValueError("Request body must be JSON")
    if not isinstance(body, dict):
        raise ValueError("Request body must be a JSON object")
    return body


def _orchestrator(request) -> SyncOrchestrator:
    return request.app.state.orchestrator


async def health_check(request):
    """Health check endpoint to verify the server is running"""
    return custom_json_response({
        "status": "healthy",
        "service": "receiptflow",
        "version": __version__,
        "store": request.app.state.store_type,
    })


async def get_session(request):
    orchestrator = _orchestrator(request)
    info = orchestrator.session_info()
    info["alerts"] = orchestrator.pop_alerts()
    return custom_json_response(info)


async def sign_up(request):
    try:
        body = await _json_body(request)
        identity = await _orchestrator(request).sign_up(
            body.get("email", ""), body.get("password", ""), body.get("username", "")
        )
    except ValueError as e:
        return error_response(str(e), 400)
    except AuthError as e:
        return error_response(str(e), 409)
    return custom_json_response({"user_id": identity.user_id, "email": identity.email}, status_code=201)


async def log_in(request):
    try:
        body = await _json_body(request)
        identity = await _orchestrator(request).log_in(body.get("email", ""), body.get("password", ""))
    except ValueError as e:
        return error_response(str(e), 400)
    except AuthError as e:
        return error_response(str(e), 401)
    return custom_json_response({"user_id": identity.user_id, "email": identity.email})


async def log_out(request):
    await _orchestrator(request).log_out()
    return custom_json_response({"authenticated": False})


async def paste_receipts(request):
    """Merge pasted receipt JSON (sent as the raw request body) into the log"""
    text = (await request.body()).decode("utf-8", errors="replace")
    try:
        result = _orchestrator(request).paste(text)
    except ParseError as e:
        logger.warning(f"Rejected paste: {e}")
        return error_response("failed to paste - make sure you copied valid receipt data", 400)
    except OperationInProgressError as e:
        return error_response(str(e), 409)
    return custom_json_response(result.model_dump())


async def clear_receipts(request):
    orchestrator = _orchestrator(request)
    try:
        task = orchestrator.clear()
    except OperationInProgressError as e:
        return error_response(str(e), 409)

    if task is None:
        return custom_json_response({"cleared": True, "remote_delete": False})
    return custom_json_response({"cleared": True, "remote_delete": True}, status_code=202)


async def get_progress(request):
    orchestrator = _orchestrator(request)
    tracker = orchestrator.delete_progress
    if tracker is None:
        return custom_json_response({"active": False})
    return custom_json_response({"active": orchestrator.is_deleting, **progress_payload(tracker.snapshot())})


async def tag_bounty(request):
    try:
        body = await _json_body(request)
        index = body.get("index")
        if not isinstance(index, int) or isinstance(index, bool):
            raise ValueError("index must be an integer")
        await _orchestrator(request).tag_bounty(index, body.get("concept", ""))
    except (ValueError, IndexError) as e:
        return error_response(str(e), 400)
    except OperationInProgressError as e:
        return error_response(str(e), 409)
    except StorageError as e:
        return error_response(f"failed to save bounties: {e}", 502)
    return custom_json_response({"tagged": True})


async def get_stats(request):
    """Dashboard statistics for the requested time filter"""
    time_filter = request.query_params.get("filter", "all")
    if time_filter not in TIME_FILTERS:
        return error_response(f"filter must be one of {', '.join(TIME_FILTERS)}", 400)
    stats = _orchestrator(request).get_dashboard(time_filter)
    return custom_json_response(stats.model_dump())


async def refresh(request):
    orchestrator = _orchestrator(request)
    try:
        await orchestrator.refresh()
    except OperationInProgressError as e:
        return error_response(str(e), 409)
    except StorageError as e:
        return error_response(f"failed to load data: {e}", 502)
    return custom_json_response(orchestrator.session_info())


async def get_system_stats(request):
    """System statistics for debugging"""
    stats = _orchestrator(request).get_stats()
    stats["websocket"] = request.app.state.broadcaster.get_stats()
    stats["timestamp"] = datetime.now().isoformat()
    return custom_json_response(stats)


routes = [
    Route("/health", health_check, methods=["GET"]),
    Route("/api/session", get_session, methods=["GET"]),
    Route("/api/auth/signup", sign_up, methods=["POST"]),
    Route("/api/auth/login", log_in, methods=["POST"]),
    Route("/api/auth/logout", log_out, methods=["POST"]),
    Route("/api/receipts/paste", paste_receipts, methods=["POST"]),
    Route("/api/receipts", clear_receipts, methods=["DELETE"]),
    Route("/api/receipts/progress", get_progress, methods=["GET"]),
    Route("/api/bounties/tag", tag_bounty, methods=["POST"]),
    Route("/api/stats", get_stats, methods=["GET"]),
    Route("/api/refresh", refresh, methods=["POST"]),
    Route("/api/system", get_system_stats, methods=["GET"]),
    WebSocketRoute("/ws/progress", ProgressStreamEndpoint),
]


def create_app(
    orchestrator: Optional[SyncOrchestrator] = None,
    config: Optional[ReceiptflowConfig] = None,
) -> Starlette:
    """Build the application.

    Args:
        orchestrator: Pre-built orchestrator (tests); when None one is built
            at startup from the configured document store
        config: Configuration; defaults to get_config()
    """

    @asynccontextmanager
    async def lifespan(app):
        app_config = config or get_config()
        logger.info("Starting receiptflow backend services...")

        if orchestrator is None:
            store = await DatabaseFactory.create_store_async(app_config)
            app.state.orchestrator = SyncOrchestrator(
                store,
                LocalIdentityProvider(store),
                LocalCache(app_config.LOCAL_CACHE_DIR),
                config=app_config,
            )
            app.state.store_type = DatabaseFactory.get_store_type(app_config)
        else:
            app.state.orchestrator = orchestrator
            app.state.store_type = type(orchestrator.document_store).__name__

        broadcaster = ProgressBroadcaster()
        app.state.broadcaster = broadcaster
        remove_listener = app.state.orchestrator.add_progress_listener(broadcaster.on_progress)

        await app.state.orchestrator.start()
        logger.info("All services started successfully - ready to accept connections")

        try:
            yield
        finally:
            logger.info("Shutting down receiptflow backend services...")
            remove_listener()
            await app.state.orchestrator.stop()
            await broadcaster.close()
            try:
                await app.state.orchestrator.document_store.close()
            except StorageError as e:
                logger.warning(f"Error closing document store: {e}")
            logger.info("All services shut down successfully")

    return Starlette(
        debug=(config or get_config()).DEBUG,
        routes=routes,
        lifespan=lifespan,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=["*"],
                allow_methods=["GET", "POST", "DELETE"],
                allow_headers=["*"],
            ),
        ],
    )


app = create_app()
