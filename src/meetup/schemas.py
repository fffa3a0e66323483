"""Shared request/response schema bases."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Accepts camelCase (as mobile clients send) or snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SuccessResponse(BaseModel):
    success: bool = True
    message: str | None = None


class ResultResponse(BaseModel):
    success: bool = True
    result: Any = None
