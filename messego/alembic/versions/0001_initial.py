"""users and messages

Revision ID: 0001
Revises: 
Create Date: 2025-01-01 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

revision = '0001'
down_revision = None
branch_labels = None
depends_on = None

message_type = sa.Enum('TEXT', 'IMAGE', name='message_type')


def upgrade():
    op.create_table('users',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('email', sa.String(254), nullable=False),
        sa.Column('name', sa.String(50), nullable=False),
        sa.Column('hashed_password', sa.String(255), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table('messages',
        sa.Column('id', sa.Integer, primary_key=True),
        sa.Column('from_id', sa.Integer, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('to_id', sa.Integer, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', message_type, nullable=False),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('image_url', sa.String(1024), nullable=True),
        sa.Column('image_public_id', sa.String(512), nullable=True),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint('from_id <> to_id', name='ck_messages_not_self'),
        sa.CheckConstraint(
            "(type = 'TEXT' AND text IS NOT NULL AND image_url IS NULL) OR "
            "(type = 'IMAGE' AND text IS NULL AND image_url IS NOT NULL)",
            name='ck_messages_content_matches_type',
        ),
    )
    op.create_index('ix_messages_from_id', 'messages', ['from_id'])
    op.create_index('ix_messages_to_id', 'messages', ['to_id'])
    op.create_index('ix_messages_created_at', 'messages', ['created_at'])
    op.create_index('ix_messages_pair_created', 'messages', ['from_id', 'to_id', 'created_at'])


def downgrade():
    op.drop_table('messages')
    op.drop_table('users')
    message_type.drop(op.get_bind(), checkfirst=True)
