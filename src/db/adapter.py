"""
Async database adapter for WhatsApp Archive.

Provides every store operation on top of SQLAlchemy async. All writes are
idempotent upserts: re-applying the same input never creates duplicates
and never replaces known non-empty data with empty data.
"""

import logging
import asyncio
import time
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any
from functools import wraps

from sqlalchemy import select, update, delete, func, text, and_, or_, case, literal_column, table, column
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError

from .models import (
    Chat, Contact, Group, GroupParticipant, ContactAlias, ContactTag, Message
)
from .base import DatabaseManager

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50

messages_fts = table('messages_fts', column('rowid'))


def to_unix(dt: Optional[datetime]) -> int:
    """Convert a datetime to unix seconds; naive values are taken as UTC."""
    if dt is None:
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def from_unix(seconds: Optional[int]) -> Optional[datetime]:
    """Convert unix seconds to an aware UTC datetime; zero means unknown."""
    if not seconds or seconds <= 0:
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def null_if_empty(value: Optional[str]) -> Optional[str]:
    """Trim a string and map empty to None."""
    if value is None:
        return None
    value = value.strip()
    return value or None


def fts_phrase_query(query: str) -> str:
    """Quote each whitespace-separated term as an FTS5 phrase so punctuation is literal."""
    return ' '.join('"' + term.replace('"', '""') + '"' for term in query.split())


def _bytes_or_none(value: Optional[bytes]) -> Optional[bytes]:
    if not value:
        return None
    return bytes(value)


def _keep_non_empty(new, old):
    return func.coalesce(func.nullif(new, ''), old)


def _keep_non_empty_bytes(new, old):
    return case((and_(new.isnot(None), func.length(new) > 0), new), else_=old)


def retry_on_locked(max_retries: int = 5, initial_delay: float = 0.1, max_delay: float = 2.0, backoff_factor: float = 2.0):
    """
    Decorator to retry async database writes while SQLite reports a lock.

    Any other error propagates immediately.
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(self, *args, **kwargs):
            delay = initial_delay

            for attempt in range(max_retries + 1):
                try:
                    return await func(self, *args, **kwargs)
                except OperationalError as e:
                    error_str = str(e).lower()
                    if 'locked' not in error_str and 'busy' not in error_str:
                        raise
                    if attempt >= max_retries:
                        logger.error(
                            f"Database locked on {func.__name__} after {max_retries + 1} attempts. Giving up."
                        )
                        raise
                    logger.warning(
                        f"Database locked on {func.__name__}, attempt {attempt + 1}/{max_retries + 1}. "
                        f"Retrying in {delay:.2f}s..."
                    )
                    await asyncio.sleep(delay)
                    delay = min(delay * backoff_factor, max_delay)

        return wrapper
    return decorator


class DatabaseAdapter:
    """
    Async store operations for chats, contacts, groups and messages.

    All methods are async and should be awaited.
    """

    def __init__(self, db_manager: DatabaseManager):
        """
        Initialize adapter with a DatabaseManager.

        Args:
            db_manager: Initialized DatabaseManager instance
        """
        self.db_manager = db_manager

    def has_fts(self) -> bool:
        """Whether ranked full-text search is available (False = LIKE fallback)."""
        return self.db_manager.fts_enabled

    # ========== Chat Operations ==========

    @retry_on_locked()
    async def upsert_chat(self, jid: str, kind: str, name: Optional[str], last_message_ts: Optional[datetime]) -> None:
        """
        Insert or update a chat.

        The name is only replaced by a non-empty value and the last activity
        timestamp never moves backwards.
        """
        if not (kind or '').strip():
            kind = 'unknown'
        async with self.db_manager.get_session() as session:
            stmt = sqlite_insert(Chat).values(
                jid=jid,
                kind=kind,
                name=null_if_empty(name),
                last_message_ts=to_unix(last_message_ts),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=['jid'],
                set_={
                    'kind': stmt.excluded.kind,
                    'name': _keep_non_empty(stmt.excluded.name, Chat.name),
                    'last_message_ts': case(
                        (stmt.excluded.last_message_ts > func.coalesce(Chat.last_message_ts, 0),
                         stmt.excluded.last_message_ts),
                        else_=Chat.last_message_ts,
                    ),
                }
            )
            await session.execute(stmt)

    async def get_chat(self, jid: str) -> Optional[Dict[str, Any]]:
        """Get a single chat by JID."""
        async with self.db_manager.async_session_factory() as session:
            chat = await session.get(Chat, jid)
            return self._chat_to_dict(chat) if chat else None

    async def list_chats(self, query: str = '', limit: int = DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        """List chats by most recent activity, optionally filtered by name or JID."""
        if limit <= 0:
            limit = DEFAULT_LIMIT
        stmt = select(Chat)
        if query.strip():
            needle = f"%{query}%"
            stmt = stmt.where(or_(
                func.lower(Chat.name).like(func.lower(needle)),
                func.lower(Chat.jid).like(func.lower(needle)),
            ))
        stmt = stmt.order_by(Chat.last_message_ts.desc()).limit(limit)
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(stmt)
            return [self._chat_to_dict(c) for c in result.scalars()]

    def _chat_to_dict(self, chat: Chat) -> Dict[str, Any]:
        return {
            'jid': chat.jid,
            'kind': chat.kind,
            'name': chat.name or '',
            'last_message_ts': from_unix(chat.last_message_ts),
        }

    # ========== Contact Operations ==========

    @retry_on_locked()
    async def upsert_contact(
        self,
        jid: str,
        phone: str = '',
        push_name: str = '',
        full_name: str = '',
        first_name: str = '',
        business_name: str = '',
    ) -> None:
        """Insert or update a contact, keeping known fields when new ones are empty."""
        async with self.db_manager.get_session() as session:
            stmt = sqlite_insert(Contact).values(
                jid=jid,
                phone=null_if_empty(phone),
                push_name=null_if_empty(push_name),
                full_name=null_if_empty(full_name),
                first_name=null_if_empty(first_name),
                business_name=null_if_empty(business_name),
                updated_at=int(time.time()),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=['jid'],
                set_={
                    'phone': _keep_non_empty(stmt.excluded.phone, Contact.phone),
                    'push_name': _keep_non_empty(stmt.excluded.push_name, Contact.push_name),
                    'full_name': _keep_non_empty(stmt.excluded.full_name, Contact.full_name),
                    'first_name': _keep_non_empty(stmt.excluded.first_name, Contact.first_name),
                    'business_name': _keep_non_empty(stmt.excluded.business_name, Contact.business_name),
                    'updated_at': stmt.excluded.updated_at,
                }
            )
            await session.execute(stmt)

    def _contact_select(self):
        display_name = func.coalesce(
            func.nullif(Contact.full_name, ''),
            func.nullif(Contact.push_name, ''),
            func.nullif(Contact.business_name, ''),
            func.nullif(Contact.first_name, ''),
            '',
        )
        return (
            select(
                Contact.jid,
                func.coalesce(Contact.phone, '').label('phone'),
                func.coalesce(func.nullif(ContactAlias.alias, ''), '').label('alias'),
                display_name.label('name'),
                Contact.updated_at,
            )
            .select_from(Contact)
            .outerjoin(ContactAlias, ContactAlias.jid == Contact.jid)
        )

    async def search_contacts(self, query: str, limit: int = DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        """
        Search contacts by alias, name, phone or JID.

        Raises:
            ValueError: If the query is empty
        """
        if not query.strip():
            raise ValueError("query is required")
        if limit <= 0:
            limit = DEFAULT_LIMIT
        needle = f"%{query}%"
        stmt = self._contact_select().where(or_(
            func.lower(func.coalesce(ContactAlias.alias, '')).like(func.lower(needle)),
            func.lower(func.coalesce(Contact.full_name, '')).like(func.lower(needle)),
            func.lower(func.coalesce(Contact.push_name, '')).like(func.lower(needle)),
            func.lower(func.coalesce(Contact.phone, '')).like(func.lower(needle)),
            func.lower(Contact.jid).like(func.lower(needle)),
        )).order_by(
            func.coalesce(
                func.nullif(ContactAlias.alias, ''),
                func.nullif(Contact.full_name, ''),
                func.nullif(Contact.push_name, ''),
                Contact.jid,
            )
        ).limit(limit)
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(stmt)
            return [self._contact_row_to_dict(row) for row in result]

    async def get_contact(self, jid: str) -> Optional[Dict[str, Any]]:
        """Get a contact with its alias and tags."""
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(self._contact_select().where(Contact.jid == jid))
            row = result.first()
            if row is None:
                return None
            contact = self._contact_row_to_dict(row)
        contact['tags'] = await self.list_tags(jid)
        return contact

    def _contact_row_to_dict(self, row) -> Dict[str, Any]:
        return {
            'jid': row.jid,
            'phone': row.phone,
            'alias': row.alias,
            'name': row.name,
            'updated_at': from_unix(row.updated_at),
        }

    @retry_on_locked()
    async def set_alias(self, jid: str, alias: str) -> None:
        """Set the local alias for a contact."""
        alias = (alias or '').strip()
        if not alias:
            raise ValueError("alias is required")
        async with self.db_manager.get_session() as session:
            stmt = sqlite_insert(ContactAlias).values(
                jid=jid, alias=alias, notes=None, updated_at=int(time.time())
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=['jid'],
                set_={'alias': stmt.excluded.alias, 'updated_at': stmt.excluded.updated_at}
            )
            await session.execute(stmt)

    @retry_on_locked()
    async def remove_alias(self, jid: str) -> None:
        async with self.db_manager.get_session() as session:
            await session.execute(delete(ContactAlias).where(ContactAlias.jid == jid))

    @retry_on_locked()
    async def add_tag(self, jid: str, tag: str) -> None:
        """Attach a tag to a contact (no-op if already present)."""
        tag = (tag or '').strip()
        if not tag:
            raise ValueError("tag is required")
        async with self.db_manager.get_session() as session:
            stmt = sqlite_insert(ContactTag).values(jid=jid, tag=tag, updated_at=int(time.time()))
            stmt = stmt.on_conflict_do_update(
                index_elements=['jid', 'tag'],
                set_={'updated_at': stmt.excluded.updated_at}
            )
            await session.execute(stmt)

    @retry_on_locked()
    async def remove_tag(self, jid: str, tag: str) -> None:
        async with self.db_manager.get_session() as session:
            await session.execute(
                delete(ContactTag).where(and_(ContactTag.jid == jid, ContactTag.tag == tag))
            )

    async def list_tags(self, jid: str) -> List[str]:
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(
                select(ContactTag.tag).where(ContactTag.jid == jid).order_by(ContactTag.tag)
            )
            return list(result.scalars())

    # ========== Group Operations ==========

    @retry_on_locked()
    async def upsert_group(self, jid: str, name: str, owner_jid: str, created: Optional[datetime]) -> None:
        """Insert or update group metadata; empty or zero values never clobber."""
        async with self.db_manager.get_session() as session:
            stmt = sqlite_insert(Group).values(
                jid=jid,
                name=null_if_empty(name),
                owner_jid=null_if_empty(owner_jid),
                created_ts=to_unix(created),
                updated_at=int(time.time()),
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=['jid'],
                set_={
                    'name': _keep_non_empty(stmt.excluded.name, Group.name),
                    'owner_jid': _keep_non_empty(stmt.excluded.owner_jid, Group.owner_jid),
                    'created_ts': func.coalesce(func.nullif(stmt.excluded.created_ts, 0), Group.created_ts),
                    'updated_at': stmt.excluded.updated_at,
                }
            )
            await session.execute(stmt)

    @retry_on_locked()
    async def replace_group_participants(self, group_jid: str, participants: List[Dict[str, Any]]) -> None:
        """
        Replace the participant set of a group in one transaction.

        Args:
            group_jid: Group JID
            participants: Dicts with 'user_jid' and optional 'role'
                          (member, admin, superadmin; empty means member)

        On any failure the transaction rolls back and the previous
        participant set is left untouched.
        """
        now = int(time.time())
        async with self.db_manager.get_session() as session:
            await session.execute(
                delete(GroupParticipant).where(GroupParticipant.group_jid == group_jid)
            )
            for participant in participants:
                role = (participant.get('role') or '').strip() or 'member'
                await session.execute(
                    sqlite_insert(GroupParticipant).values(
                        group_jid=group_jid,
                        user_jid=participant['user_jid'],
                        role=role,
                        updated_at=now,
                    )
                )

    async def list_group_participants(self, group_jid: str) -> List[Dict[str, Any]]:
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(
                select(GroupParticipant)
                .where(GroupParticipant.group_jid == group_jid)
                .order_by(GroupParticipant.user_jid)
            )
            return [
                {'group_jid': p.group_jid, 'user_jid': p.user_jid, 'role': p.role or 'member'}
                for p in result.scalars()
            ]

    async def list_groups(self, query: str = '', limit: int = DEFAULT_LIMIT) -> List[Dict[str, Any]]:
        """List groups, newest first, optionally filtered by name or JID."""
        if limit <= 0:
            limit = DEFAULT_LIMIT
        stmt = select(Group)
        if query.strip():
            needle = f"%{query}%"
            stmt = stmt.where(or_(
                func.lower(Group.name).like(func.lower(needle)),
                func.lower(Group.jid).like(func.lower(needle)),
            ))
        stmt = stmt.order_by(func.coalesce(Group.created_ts, 0).desc()).limit(limit)
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(stmt)
            return [
                {
                    'jid': g.jid,
                    'name': g.name or '',
                    'owner_jid': g.owner_jid or '',
                    'created_at': from_unix(g.created_ts),
                    'updated_at': from_unix(g.updated_at),
                }
                for g in result.scalars()
            ]

    # ========== Message Operations ==========

    @retry_on_locked()
    async def upsert_message(self, message_data: Dict[str, Any]) -> None:
        """
        Insert or merge a message keyed by (chat_jid, msg_id).

        Merge rules on conflict:
        - ts, from_me, sender_jid, text, media_type, media_caption: latest wins
        - names, display text, filename, mime type, direct path, reaction
          and reply fields: only replaced by a non-empty value
        - media key and hashes: only replaced by non-empty bytes
        - file_length: only replaced by a value > 0 (zero means absent)

        The full-text index is maintained by triggers inside the same
        statement, so the row and its index entry commit together.
        """
        values = {
            'chat_jid': message_data['chat_jid'],
            'chat_name': null_if_empty(message_data.get('chat_name')),
            'msg_id': message_data['msg_id'],
            'sender_jid': null_if_empty(message_data.get('sender_jid')),
            'sender_name': null_if_empty(message_data.get('sender_name')),
            'ts': to_unix(message_data.get('timestamp')),
            'from_me': 1 if message_data.get('from_me') else 0,
            'text': null_if_empty(message_data.get('text')),
            'display_text': null_if_empty(message_data.get('display_text')),
            'media_type': null_if_empty(message_data.get('media_type')),
            'media_caption': null_if_empty(message_data.get('media_caption')),
            'filename': null_if_empty(message_data.get('filename')),
            'mime_type': null_if_empty(message_data.get('mime_type')),
            'direct_path': null_if_empty(message_data.get('direct_path')),
            'media_key': _bytes_or_none(message_data.get('media_key')),
            'file_sha256': _bytes_or_none(message_data.get('file_sha256')),
            'file_enc_sha256': _bytes_or_none(message_data.get('file_enc_sha256')),
            'file_length': int(message_data.get('file_length') or 0),
            'reaction_to_id': null_if_empty(message_data.get('reaction_to_id')),
            'reaction_emoji': null_if_empty(message_data.get('reaction_emoji')),
            'reply_to_id': null_if_empty(message_data.get('reply_to_id')),
            'reply_to_display': null_if_empty(message_data.get('reply_to_display')),
        }

        async with self.db_manager.get_session() as session:
            stmt = sqlite_insert(Message).values(**values)
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=['chat_jid', 'msg_id'],
                set_={
                    'chat_name': _keep_non_empty(excluded.chat_name, Message.chat_name),
                    'sender_jid': excluded.sender_jid,
                    'sender_name': _keep_non_empty(excluded.sender_name, Message.sender_name),
                    'ts': excluded.ts,
                    'from_me': excluded.from_me,
                    'text': excluded.text,
                    'display_text': _keep_non_empty(excluded.display_text, Message.display_text),
                    'media_type': excluded.media_type,
                    'media_caption': excluded.media_caption,
                    'filename': _keep_non_empty(excluded.filename, Message.filename),
                    'mime_type': _keep_non_empty(excluded.mime_type, Message.mime_type),
                    'direct_path': _keep_non_empty(excluded.direct_path, Message.direct_path),
                    'media_key': _keep_non_empty_bytes(excluded.media_key, Message.media_key),
                    'file_sha256': _keep_non_empty_bytes(excluded.file_sha256, Message.file_sha256),
                    'file_enc_sha256': _keep_non_empty_bytes(excluded.file_enc_sha256, Message.file_enc_sha256),
                    'file_length': case(
                        (excluded.file_length > 0, excluded.file_length),
                        else_=Message.file_length,
                    ),
                    'reaction_to_id': _keep_non_empty(excluded.reaction_to_id, Message.reaction_to_id),
                    'reaction_emoji': _keep_non_empty(excluded.reaction_emoji, Message.reaction_emoji),
                    'reply_to_id': _keep_non_empty(excluded.reply_to_id, Message.reply_to_id),
                    'reply_to_display': _keep_non_empty(excluded.reply_to_display, Message.reply_to_display),
                }
            )
            await session.execute(stmt)

    def _message_select(self, *extra_columns):
        return (
            select(Message, func.coalesce(Chat.name, '').label('chat_display_name'), *extra_columns)
            .outerjoin(Chat, Chat.jid == Message.chat_jid)
        )

    def _message_to_dict(self, message: Message, chat_name: str = '', snippet: str = '') -> Dict[str, Any]:
        """Convert a Message row to a plain dictionary."""
        return {
            'chat_jid': message.chat_jid,
            'chat_name': chat_name or message.chat_name or '',
            'msg_id': message.msg_id,
            'sender_jid': message.sender_jid or '',
            'sender_name': message.sender_name or '',
            'timestamp': from_unix(message.ts),
            'from_me': bool(message.from_me),
            'text': message.text or '',
            'display_text': message.display_text or '',
            'media_type': message.media_type or '',
            'media_caption': message.media_caption or '',
            'filename': message.filename or '',
            'reaction_to_id': message.reaction_to_id or '',
            'reaction_emoji': message.reaction_emoji or '',
            'reply_to_id': message.reply_to_id or '',
            'reply_to_display': message.reply_to_display or '',
            'snippet': snippet or '',
        }

    async def _fetch_messages(self, stmt, with_snippet: bool = False) -> List[Dict[str, Any]]:
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(stmt)
            out = []
            for row in result:
                snippet = row[2] if with_snippet else ''
                out.append(self._message_to_dict(row[0], row[1], snippet))
            return out

    async def list_messages(
        self,
        chat_jid: Optional[str] = None,
        limit: int = DEFAULT_LIMIT,
        before: Optional[datetime] = None,
        after: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """List messages newest first with optional chat and time bounds (exclusive)."""
        if limit <= 0:
            limit = DEFAULT_LIMIT
        stmt = self._message_select()
        if chat_jid and chat_jid.strip():
            stmt = stmt.where(Message.chat_jid == chat_jid)
        if after is not None:
            stmt = stmt.where(Message.ts > to_unix(after))
        if before is not None:
            stmt = stmt.where(Message.ts < to_unix(before))
        stmt = stmt.order_by(Message.ts.desc()).limit(limit)
        return await self._fetch_messages(stmt)

    async def search_messages(
        self,
        query: str,
        chat_jid: Optional[str] = None,
        sender_jid: Optional[str] = None,
        limit: int = DEFAULT_LIMIT,
        before: Optional[datetime] = None,
        after: Optional[datetime] = None,
        media_type: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Search messages.

        Uses the FTS5 index ranked by bm25 when available, otherwise a
        case-insensitive substring match ordered newest first. Both paths
        apply the same filters.

        Raises:
            ValueError: If the query is empty
        """
        if not query or not query.strip():
            raise ValueError("query is required")
        if limit <= 0:
            limit = DEFAULT_LIMIT

        if self.has_fts():
            snippet = func.snippet(literal_column('messages_fts'), 0, '[', ']', '…', 12)
            stmt = (
                select(Message, func.coalesce(Chat.name, '').label('chat_display_name'), snippet.label('snippet'))
                .select_from(messages_fts)
                .join(Message, messages_fts.c.rowid == Message.id)
                .outerjoin(Chat, Chat.jid == Message.chat_jid)
                .where(text("messages_fts MATCH :query").bindparams(query=fts_phrase_query(query)))
            )
            stmt = self._apply_message_filters(stmt, chat_jid, sender_jid, before, after, media_type)
            stmt = stmt.order_by(text("bm25(messages_fts)")).limit(limit)
            return await self._fetch_messages(stmt, with_snippet=True)

        needle = f"%{query}%"
        stmt = self._message_select().where(or_(
            func.lower(Message.text).like(func.lower(needle)),
            func.lower(Message.media_caption).like(func.lower(needle)),
            func.lower(Message.filename).like(func.lower(needle)),
            func.lower(func.coalesce(Message.chat_name, '')).like(func.lower(needle)),
            func.lower(func.coalesce(Message.sender_name, '')).like(func.lower(needle)),
            func.lower(func.coalesce(Chat.name, '')).like(func.lower(needle)),
        ))
        stmt = self._apply_message_filters(stmt, chat_jid, sender_jid, before, after, media_type)
        stmt = stmt.order_by(Message.ts.desc()).limit(limit)
        return await self._fetch_messages(stmt)

    def _apply_message_filters(self, stmt, chat_jid, sender_jid, before, after, media_type):
        if chat_jid and chat_jid.strip():
            stmt = stmt.where(Message.chat_jid == chat_jid)
        if sender_jid and sender_jid.strip():
            stmt = stmt.where(Message.sender_jid == sender_jid)
        if after is not None:
            stmt = stmt.where(Message.ts > to_unix(after))
        if before is not None:
            stmt = stmt.where(Message.ts < to_unix(before))
        if media_type and media_type.strip():
            stmt = stmt.where(func.coalesce(Message.media_type, '') == media_type)
        return stmt

    async def get_message(self, chat_jid: str, msg_id: str) -> Optional[Dict[str, Any]]:
        """Get one message by (chat_jid, msg_id), or None."""
        stmt = self._message_select().where(
            and_(Message.chat_jid == chat_jid, Message.msg_id == msg_id)
        )
        rows = await self._fetch_messages(stmt)
        return rows[0] if rows else None

    async def message_context(self, chat_jid: str, msg_id: str, before: int, after: int) -> List[Dict[str, Any]]:
        """
        Return a window of messages around one message, oldest first.

        Up to `before` strictly older messages, the target, then up to
        `after` strictly newer messages.

        Raises:
            LookupError: If the target message does not exist
        """
        before = max(before, 0)
        after = max(after, 0)
        target = await self.get_message(chat_jid, msg_id)
        if target is None:
            raise LookupError(f"message {msg_id} not found in {chat_jid}")
        target_ts = to_unix(target['timestamp'])

        older = await self._fetch_messages(
            self._message_select()
            .where(and_(Message.chat_jid == chat_jid, Message.ts < target_ts))
            .order_by(Message.ts.desc())
            .limit(before)
        )
        newer = await self._fetch_messages(
            self._message_select()
            .where(and_(Message.chat_jid == chat_jid, Message.ts > target_ts))
            .order_by(Message.ts.asc())
            .limit(after)
        )
        older.reverse()
        return older + [target] + newer

    async def count_messages(self) -> int:
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(select(func.count()).select_from(Message))
            return result.scalar() or 0

    async def get_oldest_message_info(self, chat_jid: str) -> Optional[Dict[str, Any]]:
        """
        Get the oldest locally known message of a chat (the backfill anchor).

        Returns:
            Dict with chat_jid, msg_id, timestamp, from_me, sender_jid and
            sender_name, or None if the chat has no messages

        Raises:
            ValueError: If chat_jid is empty
        """
        chat_jid = (chat_jid or '').strip()
        if not chat_jid:
            raise ValueError("chat JID is required")
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(
                select(Message)
                .where(Message.chat_jid == chat_jid)
                .order_by(Message.ts.asc())
                .limit(1)
            )
            message = result.scalar_one_or_none()
            if message is None:
                return None
            return {
                'chat_jid': message.chat_jid,
                'msg_id': message.msg_id,
                'timestamp': from_unix(message.ts),
                'from_me': bool(message.from_me),
                'sender_jid': message.sender_jid or '',
                'sender_name': message.sender_name or '',
            }

    # ========== Media Operations ==========

    async def get_media_download_info(self, chat_jid: str, msg_id: str) -> Optional[Dict[str, Any]]:
        """Get everything needed to download a message's media, or None."""
        async with self.db_manager.async_session_factory() as session:
            result = await session.execute(
                self._message_select().where(
                    and_(Message.chat_jid == chat_jid, Message.msg_id == msg_id)
                )
            )
            row = result.first()
            if row is None:
                return None
            message = row[0]
            return {
                'chat_jid': message.chat_jid,
                'chat_name': row[1],
                'msg_id': message.msg_id,
                'media_type': message.media_type or '',
                'filename': message.filename or '',
                'mime_type': message.mime_type or '',
                'direct_path': message.direct_path or '',
                'media_key': message.media_key,
                'file_sha256': message.file_sha256,
                'file_enc_sha256': message.file_enc_sha256,
                'file_length': message.file_length if message.file_length and message.file_length > 0 else 0,
                'local_path': message.local_path or '',
                'downloaded_at': from_unix(message.downloaded_at),
            }

    @retry_on_locked()
    async def mark_media_downloaded(self, chat_jid: str, msg_id: str, local_path: str, downloaded_at: datetime) -> None:
        """Record where a message's media was saved and when."""
        async with self.db_manager.get_session() as session:
            await session.execute(
                update(Message)
                .where(and_(Message.chat_jid == chat_jid, Message.msg_id == msg_id))
                .values(local_path=local_path, downloaded_at=to_unix(downloaded_at))
            )

    async def close(self) -> None:
        """Close database connections."""
        await self.db_manager.close()
