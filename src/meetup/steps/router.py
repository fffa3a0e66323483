"""Step statistics endpoints, one record per account."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from meetup.container import Container
from meetup.dependencies import get_container
from meetup.schemas import ResultResponse
from meetup.steps.schemas import AddSteps, GoalUpdate, SensorReading, StepHistoryResponse, StepStatsResponse

router = APIRouter(prefix="/api/v1/users/{user_id}/steps", tags=["Steps"])


async def _stats(container: Container, user_id: str) -> StepStatsResponse:
    return StepStatsResponse(stats=await container.steps_for(user_id).get_stats())


@router.get("", response_model=StepStatsResponse)
async def get_steps(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    await container.directory.get(user_id)
    return await _stats(container, user_id)


@router.post("", response_model=StepStatsResponse)
async def add_steps(user_id: str, body: AddSteps, container: Container = Depends(get_container)):  # noqa: B008
    await container.directory.get(user_id)
    await container.steps_for(user_id).add_steps(body.steps)
    return await _stats(container, user_id)


@router.post("/reading", response_model=ResultResponse)
async def sensor_reading(
    user_id: str, body: SensorReading, container: Container = Depends(get_container)  # noqa: B008
):
    """Cumulative count from the device; only the increase is added."""
    await container.directory.get(user_id)
    added = await container.steps_for(user_id).on_sensor_reading(body.total)
    return ResultResponse(result={"added": added})


@router.put("/goal", response_model=ResultResponse)
async def set_goal(user_id: str, body: GoalUpdate, container: Container = Depends(get_container)):  # noqa: B008
    await container.directory.get(user_id)
    return ResultResponse(result={"goal": await container.steps_for(user_id).set_goal(body.goal)})


@router.delete("", response_model=StepStatsResponse)
async def reset_steps(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    await container.directory.get(user_id)
    await container.steps_for(user_id).reset()
    return await _stats(container, user_id)


@router.get("/history", response_model=StepHistoryResponse)
async def step_history(
    user_id: str,
    days: int = Query(7, ge=1, le=366),
    container: Container = Depends(get_container),  # noqa: B008
):
    await container.directory.get(user_id)
    return StepHistoryResponse(history=await container.steps_for(user_id).get_step_history(days))


@router.post("/sync", response_model=ResultResponse)
async def sync_steps(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    """Pull today's count from the step sensor and, when due, the background window."""
    await container.directory.get(user_id)
    steps = container.steps_for(user_id)
    added = await steps.sync_from_sensor()
    added += await steps.background_sync()
    return ResultResponse(result={"added": added, "available": await steps.is_available()})
