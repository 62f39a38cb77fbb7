from fastapi import APIRouter, Request

router = APIRouter(tags=["health"])


@router.get("/health", summary="Service health probe")
async def health(request: Request) -> dict[str, str]:
    worker = getattr(request.app.state, "notification_worker", None)
    return {
        "status": "ok",
        "ticket_service": "up" if getattr(request.app.state, "ticket_service", None) else "down",
        "notifications": "running" if worker is not None and worker.running else "stopped",
    }


@router.get("/ping", summary="Public liveness probe")
async def ping() -> dict[str, str]:
    return {"status": "ok"}
