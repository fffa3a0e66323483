"""Private and global chat endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from meetup.chat.schemas import (
    ChatCreate,
    ChatListResponse,
    ChatResponse,
    MessageCreate,
    MessageListResponse,
    MessageResponse,
    ReadReceipt,
    SearchResponse,
)
from meetup.container import Container
from meetup.dependencies import get_container
from meetup.errors import NotFoundError
from meetup.schemas import ResultResponse, SuccessResponse

router = APIRouter(prefix="/api/v1", tags=["Chat"])


@router.get("/users/{user_id}/chats", response_model=ChatListResponse)
async def user_chats(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    """The user's chats, most recent first, each with a preview and the user's unread count."""
    chats = await container.chats.get_user_chats(user_id)
    items = [
        {
            **chat.to_storage(),
            "lastMessage": container.chats.get_last_message(chat),
            "unread": chat.unread_for(user_id),
        }
        for chat in chats
    ]
    return ChatListResponse(chats=items, unread=sum(item["unread"] for item in items))


@router.get("/users/{user_id}/unread-count", response_model=ResultResponse)
async def unread_count(user_id: str, container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result={"unread": await container.chats.get_unread_count(user_id)})


@router.get("/users/{user_id}/messages/search", response_model=SearchResponse)
async def search_messages(
    user_id: str,
    q: str = Query(..., min_length=1),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    container: Container = Depends(get_container),  # noqa: B008
):
    hits = await container.chats.search_messages(user_id, q, limit, offset)
    return SearchResponse(
        results=[{"message": h.message.to_storage(), "chatId": h.chat_id, "chatName": h.chat_name} for h in hits]
    )


@router.post("/chats", response_model=ChatResponse, status_code=201)
async def create_chat(body: ChatCreate, container: Container = Depends(get_container)):  # noqa: B008
    chat = await container.chats.create_chat(body.user_a, body.user_b, body.name)
    return ChatResponse(chat=chat.to_storage())


@router.get("/chats/stats", response_model=ResultResponse)
async def chat_stats(container: Container = Depends(get_container)):  # noqa: B008
    return ResultResponse(result=await container.chats.get_stats())


@router.get("/chats/{chat_id}", response_model=ChatResponse)
async def get_chat(
    chat_id: str,
    user_id: str | None = Query(None, alias="userId"),
    container: Container = Depends(get_container),  # noqa: B008
):
    chat = await container.chats.get_chat_by_id(chat_id, user_id)
    if chat is None:
        msg = "Chat not found"
        raise NotFoundError(msg)
    return ChatResponse(chat=chat.to_storage())


@router.get("/chats/{chat_id}/messages", response_model=MessageListResponse)
async def get_messages(
    chat_id: str,
    user_id: str | None = Query(None, alias="userId"),
    limit: int = Query(50, ge=0, le=1000),
    offset: int = Query(0, ge=0),
    container: Container = Depends(get_container),  # noqa: B008
):
    messages = await container.chats.get_messages(chat_id, user_id, limit, offset)
    return MessageListResponse(messages=[m.to_storage() for m in messages])


@router.post("/chats/{chat_id}/messages", response_model=MessageResponse, status_code=201)
async def send_message(chat_id: str, body: MessageCreate, container: Container = Depends(get_container)):  # noqa: B008
    """Send to a private chat, or to the global chat by its id."""
    message = await container.chats.send_to_chat(
        chat_id, body.sender_id, body.text, body.sender_name, attachments=body.attachments
    )
    return MessageResponse(message=message.to_storage())


@router.post("/chats/{chat_id}/read", response_model=SuccessResponse)
async def mark_read(chat_id: str, body: ReadReceipt, container: Container = Depends(get_container)):  # noqa: B008
    if not await container.chats.mark_as_read(chat_id, body.user_id):
        msg = "Chat not found"
        raise NotFoundError(msg)
    return SuccessResponse()


@router.delete("/chats/{chat_id}", response_model=SuccessResponse)
async def delete_chat(
    chat_id: str,
    user_id: str = Query(..., alias="userId"),
    container: Container = Depends(get_container),  # noqa: B008
):
    """Remove the chat from one user's list."""
    if not await container.chats.delete_chat_for_user(chat_id, user_id):
        msg = "Chat not found"
        raise NotFoundError(msg)
    return SuccessResponse(message="Chat deleted")
