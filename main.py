from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
import uvicorn

from config import settings
from database import engine, Base
from errors import AppError, UnauthorizedError
from routers import auth, events, participant, organizer, admin, forum
from services.captcha import CaptchaStore
from services.notifications import NotificationDispatcher
from services.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# Create database tables
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"Starting up ({settings.ENVIRONMENT})")
    notifier = app.state.notifier
    await notifier.start()
    if settings.SCHEDULER_ENABLED:
        start_scheduler(notifier)
    yield
    # Shutdown
    logger.info("Shutting down")
    if settings.SCHEDULER_ENABLED:
        stop_scheduler()
    await notifier.stop()
    app.state.captcha_store.clear()


app = FastAPI(
    title="Campus Event Management API",
    description="Events, registrations, merchandise orders, QR attendance and forums for campus clubs",
    version="1.0.0",
    lifespan=lifespan
)

app.state.notifier = NotificationDispatcher(settings.NOTIFICATION_QUEUE_SIZE)
app.state.captcha_store = CaptchaStore(settings.CAPTCHA_TTL_SECONDS)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Disposition"]
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, UnauthorizedError) else None
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message}, headers=headers)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Include routers
app.include_router(auth.router, prefix="/auth", tags=["authentication"])
app.include_router(events.router, prefix="/events", tags=["events"])
app.include_router(participant.router, prefix="/participant", tags=["participant"])
app.include_router(organizer.router, prefix="/organizer", tags=["organizer"])
app.include_router(admin.router, prefix="/admin", tags=["admin"])
app.include_router(forum.router, prefix="/forum", tags=["forum"])


@app.get("/")
async def root():
    return {"message": "Campus Event Management API", "version": "1.0.0"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=8000)
