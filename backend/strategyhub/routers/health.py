"""Health check router."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    worker = getattr(request.app.state, "worker", None)
    return {
        "status": "ok",
        "service": "strategyhub",
        "version": "1.0.0",
        "worker_running": bool(worker and worker.is_running),
    }
