"""
Message Service
Send, list, mark-read and soft-delete for one-to-one conversations.

Rows are never hard-deleted: deleting sets deleted_at, and every listing and
count filters on deleted_at IS NULL. State changes that race with other
requests (mark-read, delete) are single conditional UPDATEs so each row
flips at most once.
"""
import asyncio
import logging
from typing import Iterable, List, Optional

from fastapi import UploadFile
from sqlalchemy import select, update, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .core import MESSAGES_DELETED, MESSAGES_SENT
from .crud import clamp_limit, get_user_by_id
from .errors import ForbiddenError, NotFoundError, PartialOwnershipError, ValidationError
from .gate import RequestContext
from .media import MediaUploader
from .models.messages import Message, MessageType
from .schemas.common import Pagination
from .schemas.messages import (
    ConversationData,
    ConversationStats,
    DeletedConversationData,
    DeletedCountData,
    DeletedMessageData,
    MessageOut,
)
from .schemas.users import ProfileOut, UserSummary, avatar_url
from .timeutil import utcnow

logger = logging.getLogger(__name__)

CONVERSATION_DEFAULT_LIMIT = 20
CONVERSATION_MAX_LIMIT = 100

live = Message.deleted_at.is_(None)


def between(user_a: int, user_b: int):
    return or_(
        and_(Message.from_id == user_a, Message.to_id == user_b),
        and_(Message.from_id == user_b, Message.to_id == user_a),
    )


async def _discard_images(uploader: MediaUploader, public_ids: Iterable[str]) -> None:
    """Best-effort storage cleanup; the message rows stay authoritative."""
    public_ids = [p for p in public_ids if p]
    if not public_ids:
        return
    results = await asyncio.gather(*(uploader.delete(p) for p in public_ids), return_exceptions=True)
    for public_id, result in zip(public_ids, results):
        if isinstance(result, Exception):
            logger.warning('image_cleanup_failed', extra={'public_id': public_id, 'error': str(result)})


def parse_type(value: Optional[str]) -> MessageType:
    try:
        return MessageType((value or 'TEXT').upper())
    except ValueError:
        raise ValidationError('Message type must be TEXT or IMAGE')


async def send_message(session: AsyncSession, uploader: MediaUploader, ctx: RequestContext, to_id: Optional[int],
                       msg_type: MessageType = MessageType.TEXT, text: Optional[str] = None,
                       image: Optional[UploadFile] = None) -> MessageOut:
    if not to_id:
        raise ValidationError('Receiver ID is required')
    if to_id == ctx.user_id:
        raise ValidationError('Cannot send message to yourself')
    if msg_type == MessageType.TEXT and (not text or not text.strip()):
        raise ValidationError('Text message cannot be empty')
    if msg_type == MessageType.IMAGE and image is None:
        raise ValidationError('Image file is required for image messages')

    receiver = await get_user_by_id(session, to_id)
    if not receiver:
        raise NotFoundError('Receiver not found')
    sender = await get_user_by_id(session, ctx.user_id)
    if not sender:
        # token outlived its account
        raise NotFoundError('Sender not found')

    stored = None
    if msg_type == MessageType.IMAGE:
        # nothing is written unless the upload succeeds
        stored = await uploader.upload_image(ctx.user_id, image)

    m = Message(
        from_id=sender.id,
        to_id=receiver.id,
        type=msg_type,
        text=text if msg_type == MessageType.TEXT else None,
        image_url=stored.url if stored else None,
        image_public_id=stored.public_id if stored else None,
        is_read=False,
        created_at=utcnow(),
    )
    session.add(m)
    try:
        await session.commit()
    except Exception:
        await session.rollback()
        if stored:
            await _discard_images(uploader, [stored.public_id])
        raise

    MESSAGES_SENT.labels(type=msg_type.value).inc()
    logger.info('message_sent', extra={'message_id': m.id, 'from_id': m.from_id, 'to_id': m.to_id, 'type': msg_type.value})
    return MessageOut(
        id=m.id,
        from_id=m.from_id,
        to_id=m.to_id,
        type=m.type,
        text=m.text,
        image_url=m.image_url,
        image_public_id=m.image_public_id,
        is_read=m.is_read,
        read_at=m.read_at,
        created_at=m.created_at,
        sender=UserSummary.model_validate(sender),
        receiver=UserSummary.model_validate(receiver),
    )


async def unread_count(session: AsyncSession, viewer_id: int, other_id: int) -> int:
    q = select(func.count(Message.id)).where(
        Message.from_id == other_id,
        Message.to_id == viewer_id,
        Message.is_read.is_(False),
        live,
    )
    return (await session.execute(q)).scalar_one()


async def mark_conversation_read(session: AsyncSession, viewer_id: int, other_id: int) -> int:
    """Flip every unread live message from other to viewer; read_at is only ever set here."""
    result = await session.execute(
        update(Message)
        .where(
            Message.from_id == other_id,
            Message.to_id == viewer_id,
            Message.is_read.is_(False),
            live,
        )
        .values(is_read=True, read_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    return result.rowcount


async def list_conversation(session: AsyncSession, ctx: RequestContext, other_id: int, page: int = 1,
                            limit: Optional[int] = None, mark_as_read: bool = True) -> ConversationData:
    other = await get_user_by_id(session, other_id)
    if not other:
        raise NotFoundError('User not found')

    limit = clamp_limit(limit, CONVERSATION_DEFAULT_LIMIT, CONVERSATION_MAX_LIMIT)
    where = (between(ctx.user_id, other_id), live)
    q = (
        select(Message)
        .where(*where)
        .order_by(Message.created_at.asc(), Message.id.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    rows = (await session.execute(q)).scalars().all()
    # the page is captured as the viewer saw it, before anything is marked read
    messages: List[MessageOut] = [MessageOut.model_validate(m) for m in rows]
    total = (await session.execute(select(func.count(Message.id)).where(*where))).scalar_one()

    if mark_as_read:
        marked = await mark_conversation_read(session, ctx.user_id, other_id)
        if marked:
            logger.info('messages_marked_read', extra={'viewer_id': ctx.user_id, 'other_id': other_id, 'count': marked})

    # must run after the mark-read update so badges see the new state
    unread = await unread_count(session, ctx.user_id, other_id)

    return ConversationData(
        messages=messages,
        other_user=ProfileOut(id=other.id, name=other.name, email=other.email, profile_url=avatar_url(other.name)),
        unread_count=unread,
        conversation=ConversationStats(unread_count=unread, total_messages=total),
        pagination=Pagination.build(page, limit, total),
    )


async def delete_message(session: AsyncSession, uploader: MediaUploader, ctx: RequestContext,
                         message_id: Optional[int]) -> DeletedMessageData:
    if not message_id:
        raise ValidationError('Message ID is required')

    result = await session.execute(
        update(Message)
        .where(Message.id == message_id, Message.from_id == ctx.user_id, live)
        .values(deleted_at=utcnow())
        .returning(Message.id, Message.image_public_id)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    await session.commit()

    if row is None:
        owner = (await session.execute(select(Message.from_id).where(Message.id == message_id, live))).scalar()
        if owner is None:
            raise NotFoundError('Message not found')
        raise ForbiddenError('You can only delete your own messages')

    MESSAGES_DELETED.inc()
    logger.info('message_deleted', extra={'message_id': row.id, 'actor_id': ctx.user_id})
    await _discard_images(uploader, [row.image_public_id])
    return DeletedMessageData(message_id=row.id)


async def delete_messages(session: AsyncSession, uploader: MediaUploader, ctx: RequestContext,
                          message_ids: Optional[List[int]]) -> DeletedCountData:
    """All-or-nothing bulk soft delete of the actor's own live messages."""
    if not isinstance(message_ids, list) or not message_ids:
        raise ValidationError('Message IDs array is required')
    requested = set(message_ids)

    owned = (
        await session.execute(
            select(Message.id)
            .where(Message.id.in_(requested), Message.from_id == ctx.user_id, live)
            .with_for_update()
        )
    ).scalars().all()
    if len(set(owned)) < len(requested):
        await session.rollback()
        raise PartialOwnershipError()

    result = await session.execute(
        update(Message)
        .where(Message.id.in_(requested), Message.from_id == ctx.user_id, live)
        .values(deleted_at=utcnow())
        .returning(Message.id, Message.image_public_id)
        .execution_options(synchronize_session=False)
    )
    rows = result.all()
    await session.commit()

    MESSAGES_DELETED.inc(len(rows))
    logger.info('messages_deleted', extra={'actor_id': ctx.user_id, 'count': len(rows)})
    await _discard_images(uploader, [r.image_public_id for r in rows])
    return DeletedCountData(deleted_count=len(rows))


async def delete_conversation(session: AsyncSession, uploader: MediaUploader, ctx: RequestContext,
                              other_id: int) -> DeletedConversationData:
    """Soft delete everything the actor sent to other_id. The peer's messages are untouched."""
    other = await get_user_by_id(session, other_id)
    if not other:
        raise NotFoundError('User not found')

    result = await session.execute(
        update(Message)
        .where(Message.from_id == ctx.user_id, Message.to_id == other_id, live)
        .values(deleted_at=utcnow())
        .returning(Message.id, Message.image_public_id)
        .execution_options(synchronize_session=False)
    )
    rows = result.all()
    await session.commit()

    MESSAGES_DELETED.inc(len(rows))
    await _discard_images(uploader, [r.image_public_id for r in rows])
    return DeletedConversationData(deleted_count=len(rows), other_user=UserSummary.model_validate(other))
