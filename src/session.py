"""
Session boundary for WhatsApp Archive.

The remote messaging session (pairing, encryption, transport) is an
external collaborator. This module defines the shapes it exchanges with
the archive: message payload variants, lifecycle events, contact and group
metadata, and the Session protocol itself. It also holds the small JID
helpers shared by sync, backfill and the send gateway.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union

logger = logging.getLogger(__name__)

DEFAULT_USER_SERVER = 's.whatsapp.net'
GROUP_SERVER = 'g.us'
BROADCAST_SERVER = 'broadcast'


# ========== JID helpers ==========

def split_jid(jid: str) -> Tuple[str, str]:
    """Split 'user@server' into (user, server). A bare value is a server."""
    jid = (jid or '').strip()
    if '@' not in jid:
        return '', jid
    user, server = jid.split('@', 1)
    return user, server


def parse_jid(value: str) -> str:
    """
    Validate and normalize a JID string.

    Raises:
        ValueError: If the value is empty or has no server part
    """
    value = (value or '').strip()
    if not value:
        raise ValueError("empty JID")
    user, server = split_jid(value)
    if not server:
        raise ValueError(f"invalid JID {value!r}: missing server")
    if '@' in value and not user:
        raise ValueError(f"invalid JID {value!r}: missing user")
    return f"{user}@{server}" if user else server


def to_non_ad(jid: str) -> str:
    """Strip the device suffix (user:device@server -> user@server)."""
    user, server = split_jid(jid)
    if not user:
        return jid
    user = user.split(':', 1)[0]
    return f"{user}@{server}"


def jid_user(jid: str) -> str:
    user, _ = split_jid(to_non_ad(jid))
    return user


def parse_user_or_jid(value: str) -> str:
    """
    Turn a phone number or JID into a JID.

    Raises:
        ValueError: If the value is empty or not a valid JID
    """
    value = (value or '').strip()
    if not value:
        raise ValueError("recipient is required")
    if '@' in value:
        return parse_jid(value)
    return f"{value}@{DEFAULT_USER_SERVER}"


def chat_kind(jid: str) -> str:
    """Classify a chat JID as group, broadcast, dm or unknown."""
    _, server = split_jid(jid)
    if server == GROUP_SERVER:
        return 'group'
    if server == BROADCAST_SERVER:
        return 'broadcast'
    if server == DEFAULT_USER_SERVER:
        return 'dm'
    return 'unknown'


def is_group_jid(jid: str) -> bool:
    return split_jid(jid)[1] == GROUP_SERVER


# ========== Message payload variants ==========

@dataclass
class MessageBody:
    """Base class for message payload variants."""
    pass


@dataclass
class ContextInfo:
    """Reply context attached to a message."""
    stanza_id: str = ''
    participant: str = ''
    quoted: Optional[MessageBody] = None


@dataclass
class TextBody(MessageBody):
    text: str = ''


@dataclass
class ExtendedTextBody(MessageBody):
    text: str = ''
    context: Optional[ContextInfo] = None


@dataclass
class MediaBody(MessageBody):
    """Fields shared by every downloadable media payload."""
    caption: str = ''
    mimetype: str = ''
    url: str = ''
    direct_path: str = ''
    media_key: Optional[bytes] = None
    file_sha256: Optional[bytes] = None
    file_enc_sha256: Optional[bytes] = None
    file_length: int = 0
    context: Optional[ContextInfo] = None


@dataclass
class ImageBody(MediaBody):
    pass


@dataclass
class VideoBody(MediaBody):
    gif_playback: bool = False


@dataclass
class AudioBody(MediaBody):
    ptt: bool = False


@dataclass
class DocumentBody(MediaBody):
    file_name: str = ''
    title: str = ''


@dataclass
class StickerBody(MediaBody):
    pass


@dataclass
class LocationBody(MessageBody):
    latitude: float = 0.0
    longitude: float = 0.0
    name: str = ''
    context: Optional[ContextInfo] = None


@dataclass
class ContactBody(MessageBody):
    display_name: str = ''
    vcard: str = ''
    context: Optional[ContextInfo] = None


@dataclass
class ContactsArrayBody(MessageBody):
    display_name: str = ''
    contacts: List[ContactBody] = field(default_factory=list)
    context: Optional[ContextInfo] = None


@dataclass
class ReactionBody(MessageBody):
    text: str = ''
    key_id: str = ''


@dataclass
class EncReactionBody(MessageBody):
    """A reaction whose emoji is still encrypted; only the target is known."""
    target_key_id: str = ''
    enc_payload: Optional[bytes] = None


# ========== Events ==========

class HistorySyncType(str, Enum):
    INITIAL_BOOTSTRAP = 'INITIAL_BOOTSTRAP'
    RECENT = 'RECENT'
    FULL = 'FULL'
    PUSH_NAME = 'PUSH_NAME'
    ON_DEMAND = 'ON_DEMAND'


class EndOfHistoryType(str, Enum):
    COMPLETE_BUT_MORE_MESSAGES_REMAIN_ON_PRIMARY = 'COMPLETE_BUT_MORE_MESSAGES_REMAIN_ON_PRIMARY'
    COMPLETE_AND_NO_MORE_MESSAGE_REMAIN_ON_PRIMARY = 'COMPLETE_AND_NO_MORE_MESSAGE_REMAIN_ON_PRIMARY'
    COMPLETE_ON_DEMAND_SYNC_BUT_MORE_MSG_REMAIN_ON_PRIMARY = 'COMPLETE_ON_DEMAND_SYNC_BUT_MORE_MSG_REMAIN_ON_PRIMARY'


@dataclass
class MessageInfo:
    chat: str
    id: str
    sender: str = ''
    timestamp: Optional[datetime] = None
    is_from_me: bool = False
    push_name: str = ''


@dataclass
class MessageEvent:
    """A live message."""
    info: MessageInfo
    message: Optional[MessageBody] = None


@dataclass
class MessageKey:
    remote_jid: str = ''
    from_me: bool = False
    id: str = ''
    participant: str = ''


@dataclass
class HistoryMessage:
    """One stored message inside a history sync batch."""
    key: MessageKey
    message_timestamp: int = 0  # unix seconds
    message: Optional[MessageBody] = None


@dataclass
class Conversation:
    id: str
    messages: List[HistoryMessage] = field(default_factory=list)
    end_of_history_type: Optional[EndOfHistoryType] = None


@dataclass
class HistorySyncEvent:
    """A batch of historical messages grouped by conversation."""
    sync_type: HistorySyncType
    conversations: List[Conversation] = field(default_factory=list)


@dataclass
class ConnectedEvent:
    pass


@dataclass
class DisconnectedEvent:
    pass


Event = Union[MessageEvent, HistorySyncEvent, ConnectedEvent, DisconnectedEvent]
EventHandler = Callable[[Event], Awaitable[None]]


# ========== Metadata ==========

@dataclass
class ContactInfo:
    found: bool = False
    first_name: str = ''
    full_name: str = ''
    push_name: str = ''
    business_name: str = ''
    redacted_phone: str = ''


@dataclass
class GroupParticipantInfo:
    jid: str
    is_admin: bool = False
    is_super_admin: bool = False

    @property
    def role(self) -> str:
        if self.is_super_admin:
            return 'superadmin'
        if self.is_admin:
            return 'admin'
        return 'member'


@dataclass
class GroupInfo:
    jid: str
    name: str = ''
    owner_jid: str = ''
    created: Optional[datetime] = None
    participants: List[GroupParticipantInfo] = field(default_factory=list)


@dataclass
class UploadResponse:
    url: str = ''
    direct_path: str = ''
    media_key: Optional[bytes] = None
    file_enc_sha256: Optional[bytes] = None
    file_sha256: Optional[bytes] = None
    file_length: int = 0


@dataclass
class MessageAnchor:
    """The locally oldest known message, used to anchor on-demand history."""
    chat: str
    id: str
    from_me: bool = False
    timestamp: Optional[datetime] = None


def best_contact_name(info: Optional[ContactInfo]) -> str:
    """Pick the most human name for a contact, or '' if nothing is known."""
    if info is None or not info.found:
        return ''
    for candidate in (info.full_name, info.first_name, info.business_name):
        name = (candidate or '').strip()
        if name:
            return name
    push = (info.push_name or '').strip()
    if push and push != '-':
        return push
    return (info.redacted_phone or '').strip()


class Session(Protocol):
    """
    The live messaging session.

    Event handlers are coroutine functions. The session awaits them one
    at a time, in registration order, for every event it emits.
    """

    async def connect(self, allow_qr: bool = False) -> None: ...

    def is_authed(self) -> bool: ...

    def is_connected(self) -> bool: ...

    async def close(self) -> None: ...

    def add_event_handler(self, handler: EventHandler) -> int: ...

    def remove_event_handler(self, handler_id: int) -> None: ...

    def own_jid(self) -> str: ...

    async def send_text(self, to: str, text: str) -> str: ...

    async def send_structured(self, to: str, body: MessageBody) -> str: ...

    async def upload(self, data: bytes, media_type: str) -> UploadResponse: ...

    async def download_media_to_file(
        self,
        direct_path: str,
        enc_file_hash: Optional[bytes],
        file_hash: Optional[bytes],
        media_key: Optional[bytes],
        file_length: int,
        media_type: str,
        target_path: str,
    ) -> int: ...

    async def decrypt_reaction(self, event: MessageEvent) -> ReactionBody: ...

    async def request_history_sync_on_demand(self, anchor: MessageAnchor, count: int) -> str: ...

    async def resolve_chat_name(self, chat: str, push_name: str = '') -> str: ...

    async def get_contact(self, jid: str) -> ContactInfo: ...

    async def get_all_contacts(self) -> Dict[str, ContactInfo]: ...

    async def get_joined_groups(self) -> List[GroupInfo]: ...

    async def get_group_info(self, jid: str) -> Optional[GroupInfo]: ...

    async def logout(self) -> None: ...


async def resolve_chat_name(session: Session, chat: str, push_name: str = '') -> str:
    """
    Default chat-name resolution for Session implementations.

    Groups and broadcast lists use the group subject, direct chats the best
    contact name, then the push name unless it is '-', else the JID itself.
    """
    kind = chat_kind(chat)
    try:
        if kind in ('group', 'broadcast'):
            info = await session.get_group_info(chat)
            if info is not None and info.name.strip():
                return info.name.strip()
        else:
            name = best_contact_name(await session.get_contact(to_non_ad(chat)))
            if name:
                return name
    except Exception as e:
        logger.debug(f"Could not resolve name for {chat}: {e}")

    push = (push_name or '').strip()
    if push and push != '-':
        return push
    return chat
