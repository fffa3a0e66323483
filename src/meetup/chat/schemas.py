"""Pydantic schemas for chat endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from meetup.schemas import ApiModel


class ChatCreate(ApiModel):
    user_a: str = Field(..., min_length=1)
    user_b: str = Field(..., min_length=1)
    name: str | None = Field(None, max_length=100)


class MessageCreate(ApiModel):
    sender_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1, max_length=4000)
    sender_name: str | None = Field(None, max_length=64)
    attachments: list[Any] | None = None


class ReadReceipt(ApiModel):
    user_id: str = Field(..., min_length=1)


class ChatResponse(BaseModel):
    success: bool = True
    chat: dict[str, Any] | None


class ChatListResponse(BaseModel):
    success: bool = True
    chats: list[dict[str, Any]]
    unread: int


class MessageResponse(BaseModel):
    success: bool = True
    message: dict[str, Any]


class MessageListResponse(BaseModel):
    success: bool = True
    messages: list[dict[str, Any]]


class SearchResponse(BaseModel):
    success: bool = True
    results: list[dict[str, Any]]
