from datetime import datetime
from typing import List, Optional

from pydantic import Field

from ..models.messages import MessageType
from .common import CamelModel, Pagination
from .users import ProfileOut, UserSummary


class MessageOut(CamelModel):
    id: int
    from_id: int
    to_id: int
    type: MessageType
    text: Optional[str] = None
    image_url: Optional[str] = None
    image_public_id: Optional[str] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime
    sender: UserSummary = Field(alias='from')
    receiver: UserSummary = Field(alias='to')


class MessageData(CamelModel):
    message: MessageOut


class ConversationStats(CamelModel):
    unread_count: int
    total_messages: int


class ConversationData(CamelModel):
    messages: List[MessageOut]
    other_user: ProfileOut
    unread_count: int
    conversation: ConversationStats
    pagination: Pagination


class BulkDeleteIn(CamelModel):
    message_ids: Optional[List[int]] = None


class DeletedMessageData(CamelModel):
    message_id: int


class DeletedCountData(CamelModel):
    deleted_count: int


class DeletedConversationData(CamelModel):
    deleted_count: int
    other_user: UserSummary
