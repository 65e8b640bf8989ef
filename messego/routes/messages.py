from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from ..gate import RequestContext, require_auth
from ..media import MediaUploader, get_media_uploader
from ..messaging import (
    delete_conversation,
    delete_message,
    delete_messages,
    list_conversation,
    parse_type,
    send_message,
)
from ..models import get_session
from ..schemas.common import Envelope
from ..schemas.messages import (
    BulkDeleteIn,
    ConversationData,
    DeletedConversationData,
    DeletedCountData,
    DeletedMessageData,
    MessageData,
)

router = APIRouter()


@router.post('/send', response_model=Envelope[MessageData])
async def send(
    to_id: Optional[int] = Form(None, alias='toId'),
    msg_type: str = Form('TEXT', alias='type'),
    text: Optional[str] = Form(None),
    image: Optional[UploadFile] = File(None),
    ctx: RequestContext = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    uploader: MediaUploader = Depends(get_media_uploader),
):
    message = await send_message(session, uploader, ctx, to_id, parse_type(msg_type), text=text, image=image)
    return Envelope(message='Message sent successfully', data=MessageData(message=message))


@router.get('/user/{user_id}', response_model=Envelope[ConversationData])
async def conversation(
    user_id: int,
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    mark_as_read: bool = Query(True, alias='markAsRead'),
    ctx: RequestContext = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
):
    data = await list_conversation(session, ctx, user_id, page=page, limit=limit, mark_as_read=mark_as_read)
    return Envelope(message='Messages fetched successfully', data=data)


@router.delete('/user/{user_id}', response_model=Envelope[DeletedConversationData])
async def remove_conversation(
    user_id: int,
    ctx: RequestContext = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    uploader: MediaUploader = Depends(get_media_uploader),
):
    data = await delete_conversation(session, uploader, ctx, user_id)
    return Envelope(message=f'{data.deleted_count} messages deleted successfully', data=data)


@router.delete('/delete', response_model=Envelope[DeletedMessageData])
async def remove_message(
    message_id: Optional[int] = Query(None, alias='messageId'),
    ctx: RequestContext = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    uploader: MediaUploader = Depends(get_media_uploader),
):
    data = await delete_message(session, uploader, ctx, message_id)
    return Envelope(message='Message deleted successfully', data=data)


@router.post('/delete', response_model=Envelope[DeletedCountData])
async def remove_messages(
    payload: BulkDeleteIn,
    ctx: RequestContext = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
    uploader: MediaUploader = Depends(get_media_uploader),
):
    data = await delete_messages(session, uploader, ctx, payload.message_ids)
    return Envelope(message=f'{data.deleted_count} messages deleted successfully', data=data)
