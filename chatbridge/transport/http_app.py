# chatbridge/transport/http_app.py
"""
HTTP application for the live-chat bridge.

Endpoint groups:
1. Public webhooks: Rocket.Chat Omnichannel events (fast 200 ack)
2. Public chat widget: Turnstile verification and the direct chat bridge
3. Protected: agent availability (X-API-Key), metrics (Bearer token)
4. No information leakage in production
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware

from chatbridge.config import settings
from chatbridge.core.bridge import LivechatBridge
from chatbridge.infra.dedup_cache import DedupCache, DedupSweeper
from chatbridge.infra.dispatcher import RelayDispatcher
from chatbridge.infra.http_client import close_all_sessions
from chatbridge.infra.logging_config import setup_logging, get_logger
from chatbridge.infra.metrics import get_metrics_collector
from chatbridge.infra.rate_limiter import InMemoryRateLimiter
from chatbridge.transport.chat_bridge import ChatBridgeService, chat_bridge_handler
from chatbridge.transport.dialogflow_client import DialogflowCXClient
from chatbridge.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from chatbridge.transport.rocketchat_sender import RocketChatSender
from chatbridge.transport.rocketchat_webhook import rocketchat_webhook_handler
from chatbridge.transport.security import (
    require_agents_api_key,
    require_metrics_auth,
    SecurityHeaders,
    sanitize_error_message,
)
from chatbridge.transport.turnstile_verifier import ChallengeVerifier
from chatbridge.transport.verify_chat import verify_chat_handler

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_bridge(request: Request) -> LivechatBridge:
    return request.app.state.bridge


def get_verifier(request: Request) -> ChallengeVerifier:
    return request.app.state.verifier


def get_chat_bridge_service(request: Request) -> ChatBridgeService:
    return request.app.state.chat_bridge


def get_sender(request: Request) -> RocketChatSender:
    return request.app.state.sender


# ============================================================================
# MIDDLEWARE FOR SECURITY HEADERS
# ============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting application: env={settings.app_env}")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    dedup = DedupCache(
        cooldown_seconds=settings.dedup_cooldown_seconds,
        ttl_seconds=settings.dedup_cache_ttl_seconds,
    )
    sweeper = DedupSweeper(dedup, interval_seconds=settings.dedup_sweep_interval_seconds)
    await sweeper.start()

    nlu = DialogflowCXClient()
    sender = RocketChatSender()

    bridge = LivechatBridge(
        dedup,
        nlu,
        sender,
        bot_usernames=settings.bot_username_set,
        assistant_patterns=settings.assistant_pattern_list,
        reply_alias=settings.rocketchat_reply_alias,
        auto_response=settings.bridge_active,
    )
    dispatcher = RelayDispatcher(
        bridge.relay,
        workers=settings.relay_workers,
        queue_size=settings.relay_queue_size,
    )
    bridge.dispatcher = dispatcher
    if settings.bridge_active:
        await dispatcher.start()
    else:
        logger.info(
            "Relay dispatcher not started: "
            f"bridge={settings.enable_rocketchat_dialogflow_bridge}, "
            f"auto_response={settings.enable_rocketchat_auto_response}"
        )

    verifier = ChallengeVerifier()
    limiter = InMemoryRateLimiter(
        max_requests=settings.chat_rate_limit_per_minute,
        window_seconds=60,
        block_seconds=settings.chat_rate_limit_block_seconds,
    )

    fastapi_app.state.dedup = dedup
    fastapi_app.state.bridge = bridge
    fastapi_app.state.dispatcher = dispatcher
    fastapi_app.state.sender = sender
    fastapi_app.state.verifier = verifier
    fastapi_app.state.chat_bridge = ChatBridgeService(
        verifier=verifier,
        limiter=limiter,
        nlu=nlu,
        sender=sender,
        reply_alias=settings.chat_bridge_reply_alias,
    )

    logger.info(
        f"Bridge settings: active={settings.bridge_active}, workers={settings.relay_workers}, "
        f"queue={settings.relay_queue_size}, dedup_cooldown={settings.dedup_cooldown_seconds}s, "
        f"dedup_ttl={settings.dedup_cache_ttl_seconds}s"
    )
    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    await dispatcher.stop()
    await sweeper.stop()

    # Close all shared HTTP sessions
    await close_all_sessions()

    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Chat Bridge",
    description="Rocket.Chat live-chat to Dialogflow CX relay",
    version="1.0.0",
    lifespan=lifespan,
    # Security: Completely disable docs in production (None, not conditional URL)
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

# CORS - the chat widget calls /turnstile/verify-chat and /chat-bridge from the browser
if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key"],
    )
else:
    # More permissive in dev
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)

# Add custom middleware
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    error_message = sanitize_error_message(exc, settings.is_production)

    return JSONResponse(
        status_code=500,
        content={"success": False, "error": error_message},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """
    Basic health check - PUBLIC endpoint.
    Returns minimal information.
    """
    return {"status": "healthy"}


@app.post("/webhooks/rocketchat")
async def webhook_rocketchat(request: Request, bridge: LivechatBridge = Depends(get_bridge)):
    """
    Rocket.Chat Omnichannel webhook - PUBLIC.

    - Dedup by message id + sender id (short cooldown)
    - Bot/agent messages skipped to avoid reply loops
    - Returns 200 quickly; NLU and reply run in the background
    """
    return await rocketchat_webhook_handler(request, bridge)


@app.post("/turnstile/verify-chat")
async def turnstile_verify_chat(request: Request, verifier: ChallengeVerifier = Depends(get_verifier)):
    """Chat widget proof-of-humanity token check - PUBLIC."""
    return await verify_chat_handler(request, verifier)


@app.post("/chat-bridge")
async def chat_bridge(request: Request, service: ChatBridgeService = Depends(get_chat_bridge_service)):
    """
    Direct chat relay - PUBLIC but VERIFIED.

    Requires a valid Turnstile session token and is rate limited
    per user and client IP.
    """
    return await chat_bridge_handler(request, service)


# ============================================================================
# PROTECTED ENDPOINTS
# ============================================================================

@app.get("/rocketchat/agents", dependencies=[Depends(require_agents_api_key)])
async def rocketchat_agents(sender: RocketChatSender = Depends(get_sender)):
    """
    Live-chat agents currently available - requires X-API-Key.
    """
    result = await sender.list_livechat_agents()
    if not result.success:
        logger.error(f"Agent listing failed: status={result.status}, error={result.error}")
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to fetch agents"},
        )

    users = result.data.get("users") or []
    available = [
        {
            "_id": user.get("_id"),
            "username": user.get("username"),
            "name": user.get("name"),
            "status": user.get("status"),
            "statusLivechat": user.get("statusLivechat"),
        }
        for user in users
        if user.get("statusLivechat") == "available"
    ]
    return {"success": True, "agents": available, "count": len(available)}


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    """
    Metrics endpoint - requires METRICS_TOKEN.
    """
    collector = get_metrics_collector()
    return collector.get_metrics()


@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    """
    Catch-all route for undefined endpoints.
    Returns generic 404 without revealing information.
    """
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chatbridge.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
