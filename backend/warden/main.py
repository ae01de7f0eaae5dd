import logging

from fastapi import FastAPI
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from warden.browser.driver import PlaywrightBrowserDriver
from warden.config import get_settings
from warden.constants import AGENTS_PREFIX
from warden.constants import API_PREFIX
from warden.constants import LOGIN_TEMPLATES_PREFIX
from warden.constants import LOGINS_PREFIX
from warden.database import initialize_database
from warden.routers.agents import router as agents_router
from warden.routers.login_templates import router as login_templates_router
from warden.routers.logins import router as logins_router
from warden.services.scheduler_service import SchedulerService

_settings = get_settings()

# --------------------------------------------------------------------------
# LOGGING CONFIGURATION
# --------------------------------------------------------------------------
#
# - Default log level: INFO
# - Can be set at runtime with LOG_LEVEL env (e.g. LOG_LEVEL=WARNING for CI)
#
_log_level_name = _settings.log_level.upper()
try:
    _log_level = getattr(logging, _log_level_name)
except AttributeError:
    _log_level = logging.INFO
logging.basicConfig(level=_log_level, format="%(levelname)s - %(message)s", handlers=[logging.StreamHandler()])

logger = logging.getLogger(__name__)

# Create FastAPI APP
app = FastAPI(redirect_slashes=True)

# The browser is launched lazily on the first probe and closed on shutdown.
# Tests replace ``app.state.browser_driver`` with a scripted fake.
app.state.browser_driver = PlaywrightBrowserDriver()
app.state.scheduler = None
# Pages held open between reconnect start and completion
app.state.reconnect_browser = None

# ------------------------------------------------------------------
# CORS – open wildcard in dev/tests unless ``ALLOWED_CORS_ORIGINS`` (a
# comma-separated list) restricts it.
# ------------------------------------------------------------------

if _settings.allowed_cors_origins.strip():
    cors_origins = [o.strip() for o in _settings.allowed_cors_origins.split(",") if o.strip()]
else:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=cors_origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def log_unhandled_errors(request: Request, exc: Exception):
    """Log unexpected errors and answer with a generic 500."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


app.include_router(logins_router, prefix=f"{API_PREFIX}{LOGINS_PREFIX}")
app.include_router(login_templates_router, prefix=f"{API_PREFIX}{LOGIN_TEMPLATES_PREFIX}")
app.include_router(agents_router, prefix=f"{API_PREFIX}{AGENTS_PREFIX}")


@app.on_event("startup")
async def startup_event():
    """Initialize services on app startup."""
    try:
        # Create DB tables if they don't exist
        initialize_database()
        logger.info("Database tables initialized")

        # The scheduler keeps the event loop alive, so tests never start it
        if not _settings.testing:
            app.state.scheduler = SchedulerService(app.state.browser_driver)
            await app.state.scheduler.start()
    except Exception as e:
        logger.error(f"Error during startup: {e}")


@app.on_event("shutdown")
async def shutdown_event():
    """Stop the scheduler and close the shared browser."""
    try:
        if app.state.scheduler is not None:
            await app.state.scheduler.stop()
            app.state.scheduler = None
    except Exception as e:
        logger.error(f"Error stopping scheduler service: {e}")

    try:
        if app.state.reconnect_browser is not None:
            await app.state.reconnect_browser.close_all()
            app.state.reconnect_browser = None
    except Exception as e:
        logger.error(f"Error closing reconnect pages: {e}")

    try:
        await app.state.browser_driver.close_browser()
        logger.info("Browser closed")
    except Exception as e:
        logger.error(f"Error closing browser: {e}")


# Root endpoint
@app.get("/")
async def read_root():
    """Return a simple message to indicate the API is working."""
    return {"message": "Login health API is running"}
