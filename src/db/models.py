"""
SQLAlchemy ORM models for WhatsApp Archive.

The tables themselves are created by the numbered steps in migrations.py;
these models describe the schema after the latest step. Timestamps are
stored as unix seconds (INTEGER) so range filters and MAX() merges are
plain integer comparisons.
"""

from typing import Optional
from sqlalchemy import (
    BigInteger, Integer, String, Text, LargeBinary,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class SchemaMigration(Base):
    """Append-only ledger of applied migrations."""
    __tablename__ = 'schema_migrations'

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    applied_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Chat(Base):
    """Chats table - direct chats, groups, broadcast lists."""
    __tablename__ = 'chats'

    jid: Mapped[str] = mapped_column(String, primary_key=True)
    kind: Mapped[str] = mapped_column(String, nullable=False)  # dm|group|broadcast|unknown
    name: Mapped[Optional[str]] = mapped_column(Text)
    last_message_ts: Mapped[Optional[int]] = mapped_column(BigInteger)


class Contact(Base):
    """Contacts table - address book and push names."""
    __tablename__ = 'contacts'

    jid: Mapped[str] = mapped_column(String, primary_key=True)
    phone: Mapped[Optional[str]] = mapped_column(String)
    push_name: Mapped[Optional[str]] = mapped_column(Text)
    full_name: Mapped[Optional[str]] = mapped_column(Text)
    first_name: Mapped[Optional[str]] = mapped_column(Text)
    business_name: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Group(Base):
    """Groups table - group metadata."""
    __tablename__ = 'groups'

    jid: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(Text)
    owner_jid: Mapped[Optional[str]] = mapped_column(String)
    created_ts: Mapped[Optional[int]] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class GroupParticipant(Base):
    """Group participants - replaced wholesale on each refresh."""
    __tablename__ = 'group_participants'

    group_jid: Mapped[str] = mapped_column(
        String, ForeignKey('groups.jid', ondelete='CASCADE'), primary_key=True
    )
    user_jid: Mapped[str] = mapped_column(String, primary_key=True)
    role: Mapped[Optional[str]] = mapped_column(String)  # member|admin|superadmin
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ContactAlias(Base):
    """Local aliases for contacts."""
    __tablename__ = 'contact_aliases'

    jid: Mapped[str] = mapped_column(String, primary_key=True)
    alias: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class ContactTag(Base):
    """Local tags for contacts."""
    __tablename__ = 'contact_tags'

    jid: Mapped[str] = mapped_column(String, primary_key=True)
    tag: Mapped[str] = mapped_column(String, primary_key=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)


class Message(Base):
    """Messages table - unique per (chat_jid, msg_id)."""
    __tablename__ = 'messages'

    # Integer primary key aliases the SQLite rowid used by messages_fts
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chat_jid: Mapped[str] = mapped_column(String, ForeignKey('chats.jid', ondelete='CASCADE'), nullable=False)
    chat_name: Mapped[Optional[str]] = mapped_column(Text)
    msg_id: Mapped[str] = mapped_column(String, nullable=False)
    sender_jid: Mapped[Optional[str]] = mapped_column(String)
    sender_name: Mapped[Optional[str]] = mapped_column(Text)
    ts: Mapped[int] = mapped_column(BigInteger, nullable=False)
    from_me: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 or 1
    text: Mapped[Optional[str]] = mapped_column(Text)
    display_text: Mapped[Optional[str]] = mapped_column(Text)
    media_type: Mapped[Optional[str]] = mapped_column(String)
    media_caption: Mapped[Optional[str]] = mapped_column(Text)
    filename: Mapped[Optional[str]] = mapped_column(Text)
    mime_type: Mapped[Optional[str]] = mapped_column(String)
    direct_path: Mapped[Optional[str]] = mapped_column(Text)
    media_key: Mapped[Optional[bytes]] = mapped_column(LargeBinary)
    file_sha256: Mapped[Optional[bytes]] = mapped_column(LargeBinary)
    file_enc_sha256: Mapped[Optional[bytes]] = mapped_column(LargeBinary)
    file_length: Mapped[Optional[int]] = mapped_column(BigInteger)
    local_path: Mapped[Optional[str]] = mapped_column(Text)
    downloaded_at: Mapped[Optional[int]] = mapped_column(BigInteger)
    reaction_to_id: Mapped[Optional[str]] = mapped_column(String)
    reaction_emoji: Mapped[Optional[str]] = mapped_column(String)
    reply_to_id: Mapped[Optional[str]] = mapped_column(String)
    reply_to_display: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        UniqueConstraint('chat_jid', 'msg_id'),
        Index('idx_messages_chat_ts', 'chat_jid', 'ts'),
        Index('idx_messages_ts', 'ts'),
        {'sqlite_autoincrement': True},
    )
