# app/models/session_tables.py
# Tables for users, caller tokens, shared sessions and presence

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    Table,
    Text,
    TIMESTAMP,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB

from app.db.base import metadata


users = Table(
    'users',
    metadata,
    Column('id', Text, primary_key=True),
    Column('username', Text, nullable=False),
    Column('global_name', Text, nullable=True),
    Column('avatar', Text, nullable=True),
    Column('created_at', TIMESTAMP(timezone=True), nullable=False),
    Column('updated_at', TIMESTAMP(timezone=True), nullable=False),
    schema='public',
)

# Issued by the external login flow; id is the sha256 hex of the bearer token
auth_sessions = Table(
    'auth_sessions',
    metadata,
    Column('id', Text, primary_key=True),
    Column('user_id', Text, ForeignKey('public.users.id', ondelete='CASCADE'), nullable=False),
    Column('expires_at', TIMESTAMP(timezone=True), nullable=False),
    schema='public',
)

shared_sessions = Table(
    'shared_sessions',
    metadata,
    Column('id', Text, primary_key=True),  # short URL-safe code
    Column('name', Text, nullable=False),
    Column('creator_id', Text, ForeignKey('public.users.id', ondelete='CASCADE'), nullable=False),
    Column('created_at', TIMESTAMP(timezone=True), nullable=False),
    Column('is_active', Boolean, nullable=False, server_default=text('true')),
    Column('state', JSONB, nullable=False, server_default=text("'{}'::jsonb")),
    Column('state_version', Integer, nullable=False, server_default=text('0')),
    Index('ix_shared_sessions_creator_created', 'creator_id', 'created_at'),
    schema='public',
)

session_presence = Table(
    'session_presence',
    metadata,
    Column(
        'session_id', Text,
        ForeignKey('public.shared_sessions.id', ondelete='CASCADE'),
        primary_key=True,
    ),
    Column(
        'user_id', Text,
        ForeignKey('public.users.id', ondelete='CASCADE'),
        primary_key=True,
    ),
    Column('username', Text, nullable=False),
    Column('avatar', Text, nullable=True),
    Column('last_seen', BigInteger, nullable=False),  # epoch seconds
    Index('ix_session_presence_session_last_seen', 'session_id', 'last_seen'),
    schema='public',
)
