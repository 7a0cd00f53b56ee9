"""
Canonicalization of inbound messages.

Every inbound shape (live message, history batch entry, reaction, reply,
media) is mapped to one NormalizedMessage. The stored display text is
derived from it by compose_display_text().
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from .session import (
    MessageBody, TextBody, ExtendedTextBody, MediaBody, ImageBody, VideoBody,
    AudioBody, DocumentBody, StickerBody, LocationBody, ContactBody,
    ContactsArrayBody, ReactionBody, EncReactionBody, ContextInfo,
    MessageEvent, HistoryMessage, parse_jid,
)

logger = logging.getLogger(__name__)

MEDIA_LABELS = {
    'image': 'Sent image',
    'video': 'Sent video',
    'gif': 'Sent gif',
    'audio': 'Sent audio',
    'document': 'Sent document',
    'sticker': 'Sent sticker',
}

FALLBACK_TARGET = 'message'
EMPTY_REPLY_BODY = '(message)'

# Returns the stored message dict for (chat_jid, msg_id), or None
MessageLookup = Callable[[str, str], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class MediaDescriptor:
    type: str
    caption: str = ''
    filename: str = ''
    mime_type: str = ''
    direct_path: str = ''
    media_key: Optional[bytes] = None
    file_sha256: Optional[bytes] = None
    file_enc_sha256: Optional[bytes] = None
    file_length: int = 0


@dataclass
class NormalizedMessage:
    chat: str
    id: str
    sender_jid: str = ''
    timestamp: Optional[datetime] = None
    from_me: bool = False
    push_name: str = ''
    text: str = ''
    media: Optional[MediaDescriptor] = None
    label: str = ''
    reply_to_id: str = ''
    reply_to_display: str = ''
    reaction_to_id: str = ''
    reaction_emoji: str = ''

    @property
    def is_reaction(self) -> bool:
        return bool(self.reaction_to_id)

    @property
    def is_reply(self) -> bool:
        return bool(self.reply_to_id or self.reply_to_display)


def _copy_bytes(value: Optional[bytes]) -> Optional[bytes]:
    if not value:
        return None
    return bytes(value)


def _media_descriptor(body: MediaBody, media_type: str, caption: str, filename: str = '') -> MediaDescriptor:
    return MediaDescriptor(
        type=media_type,
        caption=caption,
        filename=filename,
        mime_type=body.mimetype,
        direct_path=body.direct_path,
        media_key=_copy_bytes(body.media_key),
        file_sha256=_copy_bytes(body.file_sha256),
        file_enc_sha256=_copy_bytes(body.file_enc_sha256),
        file_length=body.file_length if body.file_length and body.file_length > 0 else 0,
    )


# ========== Per-variant extraction ==========

def _extract_text(body: TextBody, msg: NormalizedMessage) -> None:
    msg.text = body.text


def _extract_extended_text(body: ExtendedTextBody, msg: NormalizedMessage) -> None:
    msg.text = body.text


def _extract_image(body: ImageBody, msg: NormalizedMessage) -> None:
    msg.text = msg.text or body.caption
    msg.media = _media_descriptor(body, 'image', body.caption)


def _extract_video(body: VideoBody, msg: NormalizedMessage) -> None:
    msg.text = msg.text or body.caption
    msg.media = _media_descriptor(body, 'gif' if body.gif_playback else 'video', body.caption)


def _extract_audio(body: AudioBody, msg: NormalizedMessage) -> None:
    msg.text = msg.text or '[Audio]'
    msg.media = _media_descriptor(body, 'audio', msg.text)


def _extract_document(body: DocumentBody, msg: NormalizedMessage) -> None:
    msg.text = msg.text or body.caption
    msg.media = _media_descriptor(body, 'document', body.caption, filename=body.file_name)


def _extract_sticker(body: StickerBody, msg: NormalizedMessage) -> None:
    msg.media = _media_descriptor(body, 'sticker', '')


def _extract_nothing(body: MessageBody, msg: NormalizedMessage) -> None:
    pass


def _extract_reaction(body: ReactionBody, msg: NormalizedMessage) -> None:
    msg.reaction_emoji = body.text
    msg.reaction_to_id = body.key_id


def _extract_enc_reaction(body: EncReactionBody, msg: NormalizedMessage) -> None:
    msg.reaction_to_id = body.target_key_id


_EXTRACTORS = {
    TextBody: _extract_text,
    ExtendedTextBody: _extract_extended_text,
    ImageBody: _extract_image,
    VideoBody: _extract_video,
    AudioBody: _extract_audio,
    DocumentBody: _extract_document,
    StickerBody: _extract_sticker,
    LocationBody: _extract_nothing,
    ContactBody: _extract_nothing,
    ContactsArrayBody: _extract_nothing,
    ReactionBody: _extract_reaction,
    EncReactionBody: _extract_enc_reaction,
}

_LABELS = {
    TextBody: lambda body: body.text.strip(),
    ExtendedTextBody: lambda body: body.text.strip(),
    ImageBody: lambda body: MEDIA_LABELS['image'],
    VideoBody: lambda body: MEDIA_LABELS['gif'] if body.gif_playback else MEDIA_LABELS['video'],
    AudioBody: lambda body: MEDIA_LABELS['audio'],
    DocumentBody: lambda body: MEDIA_LABELS['document'],
    StickerBody: lambda body: MEDIA_LABELS['sticker'],
    LocationBody: lambda body: 'Sent location',
    ContactBody: lambda body: 'Sent contact',
    ContactsArrayBody: lambda body: 'Sent contacts',
}


def display_text_for_body(body: Optional[MessageBody]) -> str:
    """
    Short human-readable text for a payload, as shown for quoted messages.

    Media, locations and contacts get a canned label; text payloads their
    trimmed text; anything else ''.
    """
    if body is None:
        return ''
    label = _LABELS.get(type(body))
    if label is None:
        return ''
    return label(body)


def _extract(body: Optional[MessageBody], msg: NormalizedMessage) -> None:
    if body is None:
        return
    extractor = _EXTRACTORS.get(type(body))
    if extractor is None:
        logger.debug(f"Unsupported message payload {type(body).__name__} in {msg.chat}/{msg.id}")
        return
    extractor(body, msg)

    if not isinstance(body, (TextBody, ExtendedTextBody, ReactionBody, EncReactionBody)):
        msg.label = display_text_for_body(body)

    context: Optional[ContextInfo] = getattr(body, 'context', None)
    if context is not None:
        stanza_id = (context.stanza_id or '').strip()
        if stanza_id:
            msg.reply_to_id = stanza_id
        if context.quoted is not None:
            msg.reply_to_display = display_text_for_body(context.quoted).strip()


def parse_live_message(event: MessageEvent) -> NormalizedMessage:
    """Normalize a live message event."""
    info = event.info
    msg = NormalizedMessage(
        chat=info.chat,
        id=info.id,
        sender_jid=info.sender or '',
        timestamp=info.timestamp,
        from_me=info.is_from_me,
        push_name=info.push_name or '',
    )
    _extract(event.message, msg)
    return msg


def parse_history_message(chat_jid: str, hist: HistoryMessage) -> NormalizedMessage:
    """
    Normalize one message from a history sync conversation.

    The sender is the key participant (groups), else the key remote JID.
    An unparseable chat JID yields an empty chat, which callers skip.
    """
    try:
        chat = parse_jid(chat_jid)
    except ValueError:
        chat = ''

    sender = (hist.key.participant or '').strip() or (hist.key.remote_jid or '').strip()
    timestamp = None
    if hist.message_timestamp:
        timestamp = datetime.fromtimestamp(int(hist.message_timestamp), tz=timezone.utc)

    msg = NormalizedMessage(
        chat=chat,
        id=hist.key.id or '',
        sender_jid=sender,
        timestamp=timestamp,
        from_me=hist.key.from_me,
    )
    _extract(hist.message, msg)
    return msg


# ========== Display text ==========

def base_text(msg: NormalizedMessage) -> str:
    """Text for the message itself: own text, else its media label."""
    text = (msg.text or '').strip()
    caption_derived = msg.media is not None and text == (msg.media.caption or '').strip()
    if text and not caption_derived:
        return text
    return msg.label


async def resolve_target_text(chat_jid: str, target_id: str, inline: str, lookup: MessageLookup) -> str:
    """
    Text shown for a reply or reaction target.

    Precedence: inline quoted text, the stored target's display text, its
    raw text, its media label, then the literal 'message'.
    """
    inline = (inline or '').strip()
    if inline:
        return inline
    if target_id:
        stored = await lookup(chat_jid, target_id)
        if stored:
            for candidate in (stored.get('display_text'), stored.get('text')):
                if candidate and candidate.strip():
                    return candidate.strip()
            label = MEDIA_LABELS.get(stored.get('media_type') or '')
            if label:
                return label
    return FALLBACK_TARGET


async def compose_display_text(msg: NormalizedMessage, lookup: MessageLookup) -> str:
    """
    Build the stored display text for a normalized message.

    Reactions read "Reacted <emoji> to <target>", replies quote their
    target on the first line, everything else is its base text.
    """
    if msg.is_reaction:
        target = await resolve_target_text(msg.chat, msg.reaction_to_id, '', lookup)
        emoji = (msg.reaction_emoji or '').strip()
        if not emoji:
            return f"Reacted to {target}"
        return f"Reacted {emoji} to {target}"

    if msg.is_reply:
        quoted = await resolve_target_text(msg.chat, msg.reply_to_id, msg.reply_to_display, lookup)
        return f"> {quoted}\n{base_text(msg) or EMPTY_REPLY_BODY}"

    return base_text(msg)
