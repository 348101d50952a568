"""FastAPI entry point for the LINE webhook service."""
import logging
import os
import traceback
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from linebot.v3.exceptions import InvalidSignatureError
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from gemini_chat import constants
from gemini_chat.backend import (
    AdkAgentBackend,
    GeminiChatBackend,
    build_adk_agent,
    build_genai_client,
)
from gemini_chat.topic_filter import build_topic_filter

from app.config import Settings
from app.line_handler import LineBotHandler
from app.logging_config import setup_logging
from app.services.session_store import SessionStore
from app.session_router import SessionRouter

setup_logging()
logger = logging.getLogger(__name__)

settings = Settings.from_env()
line_handler = None

# Validate required environment variables early.
_missing_env = settings.missing_credentials()
if _missing_env:
    logger.error(f"Missing required environment variables: {_missing_env}")
    if settings.is_production:
        raise RuntimeError("Missing required environment variables")

if settings.topic_keywords:
    logger.info(
        f"Topic filter enabled ({settings.topic_mode}): {settings.topic_keywords}"
    )


def build_backend(settings: Settings):
    """Create the conversation backend selected by CHAT_BACKEND."""
    client = build_genai_client(
        api_key=settings.gemini_api_key or None,
        vertexai=settings.use_vertexai,
        project=settings.gcp_project,
        location=settings.gcp_location,
        credentials_file=settings.credentials_file,
    )
    if settings.backend == constants.BACKEND_ADK:
        # ADK builds its own model client from the environment.
        if settings.gemini_api_key:
            os.environ.setdefault("GOOGLE_API_KEY", settings.gemini_api_key)
        agent = build_adk_agent(model=settings.model, instruction=settings.system_instruction)
        return AdkAgentBackend(agent=agent, client=client, image_model=settings.image_model)
    return GeminiChatBackend(
        client=client,
        model=settings.model,
        image_model=settings.image_model,
        system_instruction=settings.system_instruction,
    )


def build_line_handler(settings: Settings, backend) -> LineBotHandler:
    """Wire store, router and handler together for one backend."""
    router = SessionRouter(
        store=SessionStore(backend),
        topic_filter=build_topic_filter(settings.topic_keywords, settings.topic_mode),
        reset_command=settings.reset_command,
        prompt_prefix=settings.prompt_prefix,
        greeting_text=settings.greeting_text,
        refusal_text=settings.refusal_text,
        apology_text=settings.apology_text,
        max_concurrency=settings.backend_concurrency,
        timeout=settings.backend_timeout,
    )
    return LineBotHandler(
        channel_secret=settings.channel_secret,
        channel_access_token=settings.channel_access_token,
        router=router,
        session_scope=settings.session_scope,
    )


async def init_line(fatal: bool = False):
    """Initialize the LINE bot.

    Args:
        fatal: Re-raise initialization errors instead of logging them. Startup
            in production uses this so bad credentials stop the process.
    """
    global line_handler
    if line_handler is None and settings.channel_secret:
        try:
            logger.info(f"Initializing LINE bot with {settings.backend} backend...")
            handler = build_line_handler(settings, build_backend(settings))
            await handler.initialize()
            line_handler = handler
            logger.info("LINE bot initialized successfully")
        except Exception as e:
            logger.error(f"Failed to initialize LINE bot: {e}")
            logger.error(traceback.format_exc())
            if fatal:
                raise


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup logic
    await init_line(fatal=settings.is_production)
    yield
    # Shutdown logic
    if line_handler:
        await line_handler.shutdown()

app = FastAPI(lifespan=lifespan)

# Rate limiting configuration
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter


@app.exception_handler(RateLimitExceeded)
async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """Handle rate limit exceeded errors.

    Returns JSONResponse instead of raising exception.
    """
    logger.warning(f"Rate limit exceeded for {request.client.host}")
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "detail": "Too many requests. Please try again later.",
            "retry_after": "60 seconds"
        }
    )


@app.post("/callback")
@limiter.limit("60/minute")
async def line_callback(request: Request):
    """Webhook endpoint for LINE event batches.

    Endpoint: POST /callback
    Returns 400 when the X-Line-Signature header does not match the body and
    500 when the body cannot be parsed.
    """
    # Lazy initialization on first webhook call
    if line_handler is None and settings.channel_secret:
        await init_line()

    if not line_handler:
        raise HTTPException(status_code=503, detail="LINE bot not configured")

    signature = request.headers.get("X-Line-Signature", "")
    body = (await request.body()).decode("utf-8", errors="replace")

    try:
        events = line_handler.parse(body, signature)
    except InvalidSignatureError:
        logger.warning("Invalid LINE webhook signature")
        raise HTTPException(status_code=400, detail="Invalid signature")
    except Exception as e:
        logger.error(f"Error parsing LINE webhook: {e}")
        raise HTTPException(status_code=500, detail="Failed to parse webhook body")

    await line_handler.handle_events(events)
    return PlainTextResponse("OK")


@app.get("/line/webhook-status")
async def line_webhook_status():
    """Get LINE bot status."""
    # Lazy initialization on status check
    if line_handler is None and settings.channel_secret:
        await init_line()

    if not line_handler or not line_handler.line_bot_api:
        return {
            "status": "disabled",
            "message": "LINE bot not configured",
            "secret_present": bool(settings.channel_secret),
            "token_present": bool(settings.channel_access_token),
        }

    try:
        bot_info = await line_handler.line_bot_api.get_bot_info()
        return {
            "status": "active",
            "bot_name": bot_info.display_name,
            "basic_id": bot_info.basic_id,
            "backend": settings.backend,
            "sessions": len(line_handler.router.store),
        }
    except Exception as e:
        logger.error(f"Error getting bot info: {e}")
        return {"status": "error", "message": str(e)}


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/healthz")
async def healthz():
    """Basic health check."""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=settings.port)
