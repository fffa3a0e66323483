"""Health, readiness, and version endpoints."""

from fastapi import APIRouter, Depends

from meetup.config import get_settings
from meetup.container import Container
from meetup.dependencies import get_container
from meetup.storage import keys

router = APIRouter()


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe: 200 while the process is alive."""
    return {"status": "healthy"}


@router.get("/ready")
async def readiness(container: Container = Depends(get_container)) -> dict[str, object]:  # noqa: B008
    """Readiness probe: checks the key-value store and the task queue."""
    checks: dict[str, object] = {}

    try:
        await container.store.kv.get(keys.CURRENT_USER)
        checks["storage"] = "ok"
    except Exception as exc:
        checks["storage"] = f"error: {exc}"

    checks["task_queue"] = "ok" if container.tasks.running else "stopped"

    all_ok = all(v == "ok" for v in checks.values())
    return {"status": "ready" if all_ok else "degraded", "checks": checks}


@router.get("/version")
async def version() -> dict[str, str]:
    settings = get_settings()
    return {
        "version": settings.app_version,
        "environment": settings.environment,
    }
