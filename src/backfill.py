"""
On-demand history backfill for a single chat.

Older history is requested from the primary device in rounds, each
anchored at the oldest message stored locally. Responses arrive as
ON_DEMAND history sync events and are ingested by the regular sync
handler; this module only correlates them with the pending request and
decides whether another round is worthwhile.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .db.adapter import DatabaseAdapter
from .errors import BackfillError, NotAuthenticatedError
from .session import (
    EndOfHistoryType, Event, HistorySyncEvent, HistorySyncType, MessageAnchor,
    Session, parse_jid,
)
from .sync import SyncMode, SyncOptions, SyncOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_COUNT = 50
DEFAULT_REQUESTS = 1
DEFAULT_WAIT_PER_REQUEST = 60.0
DEFAULT_IDLE_EXIT = 5.0
RESPONSE_QUEUE_SIZE = 4


@dataclass
class BackfillOptions:
    chat_jid: str
    count: int = DEFAULT_COUNT
    requests: int = DEFAULT_REQUESTS
    wait_per_request: float = DEFAULT_WAIT_PER_REQUEST  # seconds
    idle_exit: float = DEFAULT_IDLE_EXIT  # seconds


@dataclass
class BackfillResult:
    chat_jid: str
    requests_sent: int = 0
    responses_seen: int = 0
    messages_added: int = 0
    messages_synced: int = 0


@dataclass
class OnDemandResponse:
    conversations: int
    messages: int
    end_type: Optional[EndOfHistoryType]


class BackfillController:
    """Requests older history for one chat until it stops making progress."""

    def __init__(self, session: Session, db: DatabaseAdapter, orchestrator: Optional[SyncOrchestrator] = None):
        self.session = session
        self.db = db
        self.orchestrator = orchestrator or SyncOrchestrator(session, db)
        self.chat_jid = ''
        self.requests_sent = 0
        self.responses_seen = 0
        self._pending: Optional[asyncio.Queue] = None

    async def run(self, options: BackfillOptions) -> BackfillResult:
        """
        Backfill one chat inside a 'once' sync session.

        Raises:
            ValueError: If the chat is empty or not a JID
            NotAuthenticatedError: If the session is not paired
            BackfillError: If the chat has no local anchor or a response times out
        """
        chat = (options.chat_jid or '').strip()
        if not chat:
            raise ValueError("chat is required")
        try:
            self.chat_jid = parse_jid(chat)
        except ValueError as e:
            raise ValueError(f"parse chat JID: {e}") from e

        count = options.count if options.count > 0 else DEFAULT_COUNT
        requests = options.requests if options.requests > 0 else DEFAULT_REQUESTS
        wait_per_request = options.wait_per_request if options.wait_per_request > 0 else DEFAULT_WAIT_PER_REQUEST
        idle_exit = options.idle_exit if options.idle_exit > 0 else DEFAULT_IDLE_EXIT

        if not self.session.is_authed():
            raise NotAuthenticatedError("not authenticated; pair the session first")

        before_count = await self.db.count_messages()
        self.requests_sent = 0
        self.responses_seen = 0

        async def request_loop() -> None:
            # Registered after the sync handler so a batch is stored before it is reported
            handler_id = self.session.add_event_handler(self._handle_event)
            try:
                await self._request_rounds(count, requests, wait_per_request)
            finally:
                self.session.remove_event_handler(handler_id)
                self._pending = None

        sync_result = await self.orchestrator.run(SyncOptions(
            mode=SyncMode.ONCE,
            allow_qr=False,
            idle_exit=idle_exit,
            after_connect=request_loop,
        ))

        after_count = await self.db.count_messages()
        return BackfillResult(
            chat_jid=self.chat_jid,
            requests_sent=self.requests_sent,
            responses_seen=self.responses_seen,
            messages_added=after_count - before_count,
            messages_synced=sync_result.messages_stored,
        )

    async def _handle_event(self, event: Event) -> None:
        if not isinstance(event, HistorySyncEvent) or event.sync_type != HistorySyncType.ON_DEMAND:
            return
        for conversation in event.conversations:
            if (conversation.id or '').strip() != self.chat_jid:
                continue
            pending = self._pending
            if pending is None:
                return
            response = OnDemandResponse(
                conversations=len(event.conversations),
                messages=len(conversation.messages),
                end_type=conversation.end_of_history_type,
            )
            try:
                pending.put_nowait(response)
            except asyncio.QueueFull:
                logger.debug(f"Dropping extra on-demand response for {self.chat_jid}")
            return

    async def _request_rounds(self, count: int, requests: int, wait_per_request: float) -> None:
        stop_event = self.orchestrator.stop_event
        for _ in range(requests):
            oldest = await self.db.get_oldest_message_info(self.chat_jid)
            if oldest is None:
                raise BackfillError(f"no messages for {self.chat_jid} in local DB; run sync first")

            anchor = MessageAnchor(
                chat=self.chat_jid,
                id=oldest['msg_id'],
                from_me=oldest['from_me'],
                timestamp=oldest['timestamp'],
            )

            pending: asyncio.Queue = asyncio.Queue(maxsize=RESPONSE_QUEUE_SIZE)
            self._pending = pending

            self.requests_sent += 1
            logger.info(f"Requesting {count} older messages for {self.chat_jid}...")
            await self.session.request_history_sync_on_demand(anchor, count)

            response = await self._wait_response(pending, stop_event, wait_per_request)
            if self._pending is pending:
                self._pending = None
            if response is None:
                logger.info("Backfill stopped.")
                return
            self.responses_seen += 1

            logger.info(
                f"On-demand history sync: {response.conversations} conversations, {response.messages} messages."
            )

            new_oldest = await self.db.get_oldest_message_info(self.chat_jid)
            if new_oldest is not None and new_oldest['msg_id'] == oldest['msg_id']:
                logger.info("No older messages were added (stopping).")
                return
            if response.messages <= 0:
                logger.info("No messages returned (stopping).")
                return
            if response.end_type == EndOfHistoryType.COMPLETE_AND_NO_MORE_MESSAGE_REMAIN_ON_PRIMARY:
                logger.info("Reached start of chat history (stopping).")
                return

    async def _wait_response(
        self, pending: asyncio.Queue, stop_event: asyncio.Event, timeout: float
    ) -> Optional[OnDemandResponse]:
        """Wait for the correlated response; None if a stop was requested."""
        getter = asyncio.ensure_future(pending.get())
        stopper = asyncio.ensure_future(stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                [getter, stopper], timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stopper.cancel()
            if not getter.done():
                getter.cancel()
        if getter in done:
            return getter.result()
        if stopper in done or stop_event.is_set():
            return None
        raise BackfillError("timed out waiting for on-demand history sync response")
