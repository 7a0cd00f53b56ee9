"""
Sync orchestration for WhatsApp Archive.

Connects the session, routes live messages and history batches through
the canonicalizer into the store, and keeps running according to the
sync mode:

- bootstrap / once: exit after a quiet period (idle exit)
- follow: run until stopped, reconnecting with backoff on disconnects
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from .canonical import (
    NormalizedMessage, compose_display_text, parse_history_message, parse_live_message
)
from .db.adapter import DatabaseAdapter
from .media import DEFAULT_QUEUE_SIZE, DEFAULT_WORKERS, MediaCoordinator
from .session import (
    ConnectedEvent, DisconnectedEvent, EncReactionBody, Event, GroupInfo,
    HistorySyncEvent, MessageEvent, Session, best_contact_name, chat_kind, is_group_jid,
    jid_user, to_non_ad,
)

logger = logging.getLogger(__name__)

DEFAULT_IDLE_EXIT = 30.0
DEFAULT_POLL_INTERVAL = 1.0
RECONNECT_MIN_DELAY = 2.0
RECONNECT_MAX_DELAY = 30.0
PROGRESS_EVERY = 25


class SyncMode(str, Enum):
    BOOTSTRAP = 'bootstrap'
    ONCE = 'once'
    FOLLOW = 'follow'


@dataclass
class SyncOptions:
    mode: SyncMode = SyncMode.FOLLOW
    allow_qr: bool = False
    download_media: bool = False
    refresh_contacts: bool = False
    refresh_groups: bool = False
    idle_exit: float = 0.0  # seconds; bootstrap/once only, <= 0 means default
    after_connect: Optional[Callable[[], Awaitable[None]]] = None
    poll_interval: float = DEFAULT_POLL_INTERVAL


@dataclass
class SyncResult:
    messages_stored: int = 0


async def wait_any(events: List[asyncio.Event], timeout: Optional[float] = None) -> bool:
    """
    Wait until any of the events is set or the timeout passes.

    Returns:
        True if an event was set, False on timeout
    """
    if any(event.is_set() for event in events):
        return True
    waiters = [asyncio.ensure_future(event.wait()) for event in events]
    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for waiter in waiters:
            waiter.cancel()
    return bool(done)


async def reconnect_with_backoff(
    session: Session,
    stop_event: asyncio.Event,
    min_delay: float = RECONNECT_MIN_DELAY,
    max_delay: float = RECONNECT_MAX_DELAY,
) -> bool:
    """
    Reconnect until it succeeds or a stop is requested.

    The delay between attempts starts at min_delay and doubles up to
    max_delay. Every wait returns early when stop_event is set.

    Returns:
        True once connected, False if stopped first
    """
    delay = min_delay
    while not stop_event.is_set():
        try:
            await session.connect(allow_qr=False)
            logger.info("Reconnected")
            return True
        except Exception as e:
            logger.warning(f"Reconnect failed: {e}; retrying in {delay:.1f}s")
        if await wait_any([stop_event], timeout=delay):
            break
        delay = min(delay * 2, max_delay)
    return False


class MessageIngestor:
    """Writes normalized messages and the metadata around them to the store."""

    def __init__(self, session: Session, db: DatabaseAdapter):
        self.session = session
        self.db = db

    async def store(self, msg: NormalizedMessage) -> bool:
        """
        Store one normalized message with its chat, contacts and group.

        Returns:
            True if the message row was written
        """
        try:
            await self._store(msg)
            return True
        except Exception as e:
            logger.warning(f"Failed to store message {msg.chat}/{msg.id}: {e}", exc_info=True)
            return False

    async def _store(self, msg: NormalizedMessage) -> None:
        chat_jid = msg.chat
        kind = chat_kind(chat_jid)
        chat_name = await self.session.resolve_chat_name(chat_jid, msg.push_name)
        await self.db.upsert_chat(chat_jid, kind, chat_name, msg.timestamp)

        if kind == 'dm':
            await self._store_contact(chat_jid)

        sender_name = ''
        if msg.from_me:
            sender_name = 'me'
        elif msg.push_name.strip() and msg.push_name.strip() != '-':
            sender_name = msg.push_name.strip()
        if msg.sender_jid:
            name = await self._store_contact(msg.sender_jid)
            if name:
                sender_name = name

        if is_group_jid(chat_jid):
            try:
                info = await self.session.get_group_info(chat_jid)
                if info is not None:
                    await self.store_group(info)
            except Exception as e:
                logger.warning(f"Could not store group metadata for {chat_jid}: {e}")

        display_text = await compose_display_text(msg, self.db.get_message)

        media = msg.media
        await self.db.upsert_message({
            'chat_jid': chat_jid,
            'chat_name': chat_name,
            'msg_id': msg.id,
            'sender_jid': msg.sender_jid,
            'sender_name': sender_name,
            'timestamp': msg.timestamp,
            'from_me': msg.from_me,
            'text': msg.text,
            'display_text': display_text,
            'media_type': media.type if media else None,
            'media_caption': media.caption if media else None,
            'filename': media.filename if media else None,
            'mime_type': media.mime_type if media else None,
            'direct_path': media.direct_path if media else None,
            'media_key': media.media_key if media else None,
            'file_sha256': media.file_sha256 if media else None,
            'file_enc_sha256': media.file_enc_sha256 if media else None,
            'file_length': media.file_length if media else 0,
            'reaction_to_id': msg.reaction_to_id,
            'reaction_emoji': msg.reaction_emoji,
            'reply_to_id': msg.reply_to_id,
            'reply_to_display': msg.reply_to_display,
        })

    async def _store_contact(self, jid: str) -> str:
        """Best-effort contact upsert; returns the best known name or ''."""
        jid = to_non_ad(jid)
        try:
            info = await self.session.get_contact(jid)
            await self.db.upsert_contact(
                jid,
                phone=jid_user(jid),
                push_name=info.push_name,
                full_name=info.full_name,
                first_name=info.first_name,
                business_name=info.business_name,
            )
            return best_contact_name(info)
        except Exception as e:
            logger.warning(f"Could not store contact {jid}: {e}")
            return ''

    async def store_group(self, info: GroupInfo) -> None:
        """Upsert group metadata and replace its participant list."""
        await self.db.upsert_group(info.jid, info.name, info.owner_jid, info.created)
        await self.db.replace_group_participants(
            info.jid,
            [{'user_jid': p.jid, 'role': p.role} for p in info.participants],
        )

    async def refresh_contacts(self) -> int:
        """Import the session's whole address book."""
        contacts = await self.session.get_all_contacts()
        for jid, info in contacts.items():
            jid = to_non_ad(jid)
            await self.db.upsert_contact(
                jid,
                phone=jid_user(jid),
                push_name=info.push_name,
                full_name=info.full_name,
                first_name=info.first_name,
                business_name=info.business_name,
            )
        logger.info(f"Imported {len(contacts)} contacts")
        return len(contacts)

    async def refresh_groups(self) -> int:
        """Import every joined group, with its chat row and participants."""
        groups = await self.session.get_joined_groups()
        for info in groups:
            await self.db.upsert_chat(info.jid, 'group', info.name, None)
            await self.store_group(info)
        logger.info(f"Imported {len(groups)} groups")
        return len(groups)


class SyncOrchestrator:
    """
    Drives one sync run over a session.

    A single event handler is registered for the duration of run(). The
    handler updates the idle clock on every event, including per
    conversation and per message inside history batches, so a long batch
    never looks idle.
    """

    def __init__(
        self,
        session: Session,
        db: DatabaseAdapter,
        media_dir: Optional[str] = None,
        media_workers: int = DEFAULT_WORKERS,
        media_queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        """
        Args:
            session: Session to sync from
            db: Store adapter to write into
            media_dir: Download directory, required when media is enabled
            media_workers: Download worker count
            media_queue_size: Bound of the download queue
        """
        self.session = session
        self.db = db
        self.ingestor = MessageIngestor(session, db)
        self.media_dir = media_dir
        self.media_workers = media_workers
        self.media_queue_size = media_queue_size
        self.media: Optional[MediaCoordinator] = None
        self.messages_stored = 0
        self.stop_event = asyncio.Event()
        self._disconnected = asyncio.Event()
        self._last_event = 0.0

    def stop(self) -> None:
        """Request a graceful stop; wakes every wait point of run()."""
        self.stop_event.set()

    def _touch(self) -> None:
        self._last_event = asyncio.get_running_loop().time()

    async def run(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """
        Run a sync until idle exit (bootstrap/once) or stop() (follow).

        Errors from connect() and from options.after_connect propagate;
        messages stored up to that point remain in self.messages_stored.
        """
        options = options or SyncOptions()
        mode = SyncMode(options.mode or SyncMode.FOLLOW)
        idle_exit = options.idle_exit
        if mode in (SyncMode.BOOTSTRAP, SyncMode.ONCE) and idle_exit <= 0:
            idle_exit = DEFAULT_IDLE_EXIT

        self.messages_stored = 0
        self._disconnected = asyncio.Event()
        self._touch()

        self.media = None
        if options.download_media:
            if not self.media_dir:
                raise ValueError("media directory is required for media downloads")
            self.media = MediaCoordinator(
                self.session, self.db, self.media_dir,
                workers=self.media_workers, queue_size=self.media_queue_size,
            )

        logger.info(f"Starting sync (mode={mode.value})")
        handler_id = self.session.add_event_handler(self._handle_event)
        try:
            await self.session.connect(allow_qr=options.allow_qr)

            if self.media is not None:
                self.media.start()

            if options.refresh_contacts:
                try:
                    await self.ingestor.refresh_contacts()
                except Exception as e:
                    logger.warning(f"Contact refresh failed: {e}")
            if options.refresh_groups:
                try:
                    await self.ingestor.refresh_groups()
                except Exception as e:
                    logger.warning(f"Group refresh failed: {e}")

            if options.after_connect is not None:
                await options.after_connect()

            if mode == SyncMode.FOLLOW:
                await self._follow_loop()
            else:
                await self._idle_loop(idle_exit, options.poll_interval)
        finally:
            self.session.remove_event_handler(handler_id)
            if self.media is not None:
                await self.media.stop()

        logger.info(f"Sync finished: {self.messages_stored} messages stored")
        return SyncResult(messages_stored=self.messages_stored)

    async def _follow_loop(self) -> None:
        while True:
            await wait_any([self.stop_event, self._disconnected])
            if self.stop_event.is_set():
                logger.info("Stopping sync.")
                return
            await self._reconnect()

    async def _idle_loop(self, idle_exit: float, poll_interval: float) -> None:
        poll = poll_interval if poll_interval > 0 else DEFAULT_POLL_INTERVAL
        poll = min(poll, idle_exit)
        loop = asyncio.get_running_loop()
        while True:
            await wait_any([self.stop_event, self._disconnected], timeout=poll)
            if self.stop_event.is_set():
                logger.info("Stopping sync.")
                return
            if self._disconnected.is_set():
                await self._reconnect()
                continue
            if loop.time() - self._last_event >= idle_exit:
                logger.info(f"Idle for {idle_exit:g}s, exiting.")
                return

    async def _reconnect(self) -> None:
        self._disconnected.clear()
        logger.info("Reconnecting...")
        await reconnect_with_backoff(self.session, self.stop_event)

    # ========== Event handling ==========

    async def _handle_event(self, event: Event) -> None:
        self._touch()
        try:
            if isinstance(event, MessageEvent):
                await self._on_message(event)
            elif isinstance(event, HistorySyncEvent):
                await self._on_history_sync(event)
            elif isinstance(event, ConnectedEvent):
                logger.info("Connected.")
            elif isinstance(event, DisconnectedEvent):
                logger.warning("Disconnected.")
                self._disconnected.set()
        except Exception as e:
            logger.error(f"Error handling {type(event).__name__}: {e}", exc_info=True)

    async def _on_message(self, event: MessageEvent) -> None:
        if isinstance(event.message, EncReactionBody):
            try:
                event = MessageEvent(info=event.info, message=await self.session.decrypt_reaction(event))
            except Exception as e:
                logger.debug(f"Could not decrypt reaction {event.info.id}: {e}")

        msg = parse_live_message(event)
        if await self._ingest(msg) and self.messages_stored % PROGRESS_EVERY == 0:
            logger.info(f"Synced {self.messages_stored} messages...")

    async def _on_history_sync(self, event: HistorySyncEvent) -> None:
        logger.info(
            f"Processing history sync {event.sync_type.value} ({len(event.conversations)} conversations)..."
        )
        for conversation in event.conversations:
            self._touch()
            chat_id = (conversation.id or '').strip()
            if not chat_id:
                continue
            for hist in conversation.messages:
                self._touch()
                if hist is None:
                    continue
                msg = parse_history_message(chat_id, hist)
                if not msg.id or not msg.chat:
                    continue
                await self._ingest(msg)
        logger.info(f"Synced {self.messages_stored} messages...")

    async def _ingest(self, msg: NormalizedMessage) -> bool:
        stored = await self.ingestor.store(msg)
        if stored:
            self.messages_stored += 1
        if self.media is not None and msg.media is not None and msg.id:
            self.media.enqueue(msg.chat, msg.id)
        return stored
