import enum

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Enum, ForeignKey, CheckConstraint, Index
from sqlalchemy.orm import relationship
from . import Base
from ..timeutil import utcnow


class MessageType(str, enum.Enum):
    TEXT = 'TEXT'
    IMAGE = 'IMAGE'


class Message(Base):
    __tablename__ = 'messages'
    __table_args__ = (
        CheckConstraint('from_id <> to_id', name='ck_messages_not_self'),
        CheckConstraint(
            "(type = 'TEXT' AND text IS NOT NULL AND image_url IS NULL) OR "
            "(type = 'IMAGE' AND text IS NULL AND image_url IS NOT NULL)",
            name='ck_messages_content_matches_type',
        ),
        Index('ix_messages_pair_created', 'from_id', 'to_id', 'created_at'),
    )

    id = Column(Integer, primary_key=True)
    from_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True, nullable=False)
    to_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), index=True, nullable=False)
    type = Column(Enum(MessageType, name='message_type'), nullable=False, default=MessageType.TEXT)
    text = Column(Text, nullable=True)
    image_url = Column(String(1024), nullable=True)
    image_public_id = Column(String(512), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)

    sender = relationship('User', foreign_keys=[from_id], lazy='joined')
    receiver = relationship('User', foreign_keys=[to_id], lazy='joined')
