"""
In-memory Session used by the tests.

Events queued in connect_events are emitted (after a ConnectedEvent) the
first time connect() succeeds. Handlers are awaited in registration order,
like a real session.
"""

import itertools
from typing import Callable, Dict, List, Optional

from src.session import (
    ConnectedEvent, ContactInfo, DisconnectedEvent, GroupInfo, HistorySyncEvent,
    MessageAnchor, MessageBody, MessageEvent, ReactionBody, EncReactionBody,
    UploadResponse, resolve_chat_name,
)


class FakeSession:
    def __init__(self):
        self.handlers: Dict[int, Callable] = {}
        self._ids = itertools.count(1)
        self._msg_ids = itertools.count(1)
        self.authed = True
        self.connected = False
        self.connect_calls = 0
        self.connect_errors: List[Optional[Exception]] = []
        self.connect_events: List[object] = []
        self.contacts: Dict[str, ContactInfo] = {}
        self.groups: Dict[str, GroupInfo] = {}
        self.sent: List[tuple] = []
        self.uploads: List[tuple] = []
        self.downloads: List[dict] = []
        self.history_requests: List[tuple] = []
        self.on_demand_history: Optional[Callable[[MessageAnchor, int], Optional[HistorySyncEvent]]] = None
        self.send_error: Optional[Exception] = None
        self.upload_error: Optional[Exception] = None
        self.reactions: Dict[str, ReactionBody] = {}
        self.closed = False

    # Lifecycle

    async def connect(self, allow_qr: bool = False) -> None:
        self.connect_calls += 1
        if self.connect_errors:
            error = self.connect_errors.pop(0)
            if error is not None:
                raise error
        self.connected = True
        await self.emit(ConnectedEvent())
        events, self.connect_events = self.connect_events, []
        for event in events:
            await self.emit(event)

    async def disconnect(self) -> None:
        self.connected = False
        await self.emit(DisconnectedEvent())

    def is_authed(self) -> bool:
        return self.authed

    def is_connected(self) -> bool:
        return self.connected

    async def close(self) -> None:
        self.closed = True
        self.connected = False

    def own_jid(self) -> str:
        return '10000@s.whatsapp.net'

    # Events

    def add_event_handler(self, handler) -> int:
        handler_id = next(self._ids)
        self.handlers[handler_id] = handler
        return handler_id

    def remove_event_handler(self, handler_id: int) -> None:
        self.handlers.pop(handler_id, None)

    async def emit(self, event) -> None:
        for handler in list(self.handlers.values()):
            await handler(event)

    # Sending

    def _next_msg_id(self) -> str:
        return f"SENT{next(self._msg_ids)}"

    async def send_text(self, to: str, text: str) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((to, text))
        return self._next_msg_id()

    async def send_structured(self, to: str, body: MessageBody) -> str:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((to, body))
        return self._next_msg_id()

    async def upload(self, data: bytes, media_type: str) -> UploadResponse:
        if self.upload_error is not None:
            raise self.upload_error
        self.uploads.append((data, media_type))
        return UploadResponse(
            url='https://mmg.example/u',
            direct_path='/v/t62/upload',
            media_key=b'key',
            file_enc_sha256=b'enc',
            file_sha256=b'sha',
            file_length=len(data),
        )

    async def download_media_to_file(self, direct_path, enc_file_hash, file_hash, media_key,
                                     file_length, media_type, target_path) -> int:
        data = f"media:{direct_path}".encode()
        with open(target_path, 'wb') as f:
            f.write(data)
        self.downloads.append({'direct_path': direct_path, 'media_type': media_type, 'target_path': target_path})
        return len(data)

    async def decrypt_reaction(self, event: MessageEvent) -> ReactionBody:
        body = event.message
        if isinstance(body, EncReactionBody) and body.target_key_id in self.reactions:
            return self.reactions[body.target_key_id]
        raise ValueError("cannot decrypt reaction")

    async def request_history_sync_on_demand(self, anchor: MessageAnchor, count: int) -> str:
        self.history_requests.append((anchor, count))
        if self.on_demand_history is not None:
            event = self.on_demand_history(anchor, count)
            if event is not None:
                await self.emit(event)
        return f"REQ{len(self.history_requests)}"

    # Metadata

    async def resolve_chat_name(self, chat: str, push_name: str = '') -> str:
        return await resolve_chat_name(self, chat, push_name)

    async def get_contact(self, jid: str) -> ContactInfo:
        return self.contacts.get(jid, ContactInfo())

    async def get_all_contacts(self) -> Dict[str, ContactInfo]:
        return dict(self.contacts)

    async def get_joined_groups(self) -> List[GroupInfo]:
        return list(self.groups.values())

    async def get_group_info(self, jid: str) -> Optional[GroupInfo]:
        return self.groups.get(jid)

    async def logout(self) -> None:
        self.authed = False


def create_session(session_path, device):
    """SESSION_FACTORY target used by the app tests."""
    session = FakeSession()
    session.session_path = session_path
    session.device = device
    return session


NOT_CALLABLE = 'fake_session.NOT_CALLABLE'
