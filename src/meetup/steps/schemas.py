"""Pydantic schemas for step endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from meetup.schemas import ApiModel


class AddSteps(ApiModel):
    steps: int = Field(..., gt=0, le=200_000)


class SensorReading(ApiModel):
    total: int = Field(..., ge=0)


class GoalUpdate(ApiModel):
    goal: int


class StepStatsResponse(BaseModel):
    success: bool = True
    stats: dict[str, Any]


class StepHistoryResponse(BaseModel):
    success: bool = True
    history: list[dict[str, Any]]
