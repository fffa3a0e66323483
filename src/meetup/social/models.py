"""Friend request records (``meetup_friend_requests``)."""

from __future__ import annotations

from typing import Annotated, Any, Literal

from pydantic import BeforeValidator, Field

from meetup.users.models import StoredModel, fallback

RequestStatus = Annotated[
    Literal["pending", "accepted", "rejected"],
    BeforeValidator(fallback(("pending", "accepted", "rejected"), "pending")),
]


class RequestMetadata(StoredModel):
    via_qr: bool = Field(default=False, alias="viaQR")
    scanned_at: int | None = None


class FriendRequest(StoredModel):
    """A directed request between two accounts.

    At most one request exists per unordered pair. ``pending`` moves to
    ``accepted`` or ``rejected`` exactly once.
    """

    id: str
    from_user_id: str
    to_user_id: str
    status: RequestStatus = "pending"
    timestamp: int = 0
    accepted_at: int | None = None
    rejected_at: int | None = None
    metadata: RequestMetadata = Field(default_factory=RequestMetadata)

    def involves(self, user_id: str) -> bool:
        return user_id in (self.from_user_id, self.to_user_id)

    def links(self, a: str, b: str) -> bool:
        return {self.from_user_id, self.to_user_id} == {a, b}

    def other(self, user_id: str) -> str:
        return self.to_user_id if self.from_user_id == user_id else self.from_user_id


def decode_request(raw: Any) -> FriendRequest:
    if not isinstance(raw, dict):
        msg = "Friend request record is not an object"
        raise TypeError(msg)
    if not isinstance(raw.get("metadata"), dict):
        raw = {**raw, "metadata": {}}
    return FriendRequest.model_validate(raw)


def encode_request(request: FriendRequest) -> dict[str, Any]:
    return request.to_storage()
