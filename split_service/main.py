"""Main FastAPI application.

This is where the app gets created and routers get plugged in.
The host application can install its own content repository with
split_service.context.set_context() before the app starts.
"""
import asyncio
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from split_service.database import init_db
from split_service.context import get_context
from split_service.errors import PersistenceUnavailable
from split_service.routers import experiments, results, render, track
from split_service.services.rate_limiter import run_sweeper

app = FastAPI(
    title="Split Test API",
    description="API for running A/B split tests on content nodes: assignment, cascading, tracking and significance",
    version="1.0.0"
)

# TODO: lock down origins for production
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(experiments.router)
app.include_router(results.router)
app.include_router(render.router)
app.include_router(track.router)


@app.exception_handler(PersistenceUnavailable)
async def persistence_unavailable_handler(request: Request, exc: PersistenceUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


@app.on_event("startup")
async def startup_event():
    """Create tables and start the rate limit sweeper."""
    init_db()
    logger.info("Database initialized")
    app.state.sweeper = asyncio.create_task(run_sweeper(get_context()))


@app.on_event("shutdown")
async def shutdown_event():
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    logger.info("Rate limit sweeper stopped")


@app.get("/")
def root():
    """Just a basic root endpoint."""
    return {"status": "ok", "message": "Split Test API is running"}


@app.get("/health")
def health():
    """Health check endpoint"""
    return {"status": "healthy"}
