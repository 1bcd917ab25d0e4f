
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stockalert import __version__
from stockalert.config import settings
from stockalert.middleware.exceptions import register_exception_handlers
from stockalert.routers import alerts, health
from stockalert.services.scheduler import lifespan

app = FastAPI(
    title="Stock Alert Engine",
    description="Threshold-based stock alerts for the inventory console",
    version=__version__,
    lifespan=lifespan,
)

# ── Exception Handlers ───────────────────────────────────────
register_exception_handlers(app)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins.split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── Routers ──────────────────────────────────────────────────
app.include_router(health.router)
app.include_router(alerts.router, prefix="/api/alerts", tags=["alerts"])
