"""
Outbound sends through the live session.

After a successful send the message is written back into the store as a
from-me message, so the local mirror shows it without waiting for the
server echo.
"""

import logging
import mimetypes
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Optional

from .canonical import MEDIA_LABELS
from .db.adapter import DatabaseAdapter
from .errors import SendError
from .session import (
    AudioBody, ContextInfo, DocumentBody, ImageBody, MessageBody, Session,
    UploadResponse, VideoBody, chat_kind,
)

logger = logging.getLogger(__name__)

SNIFF_LENGTH = 512

# Leading bytes of common formats, checked in order
_SIGNATURES = [
    (b'\x89PNG\r\n\x1a\n', 'image/png'),
    (b'\xff\xd8\xff', 'image/jpeg'),
    (b'GIF87a', 'image/gif'),
    (b'GIF89a', 'image/gif'),
    (b'BM', 'image/bmp'),
    (b'%PDF-', 'application/pdf'),
    (b'PK\x03\x04', 'application/zip'),
    (b'\x1f\x8b\x08', 'application/x-gzip'),
    (b'OggS', 'application/ogg'),
    (b'ID3', 'audio/mpeg'),
    (b'fLaC', 'audio/flac'),
    (b'\x1aE\xdf\xa3', 'video/webm'),
]


@dataclass
class SendOutcome:
    msg_id: str
    to: str
    file: Dict[str, str] = field(default_factory=dict)


def sniff_mime_type(data: bytes) -> str:
    """Guess a MIME type from content, like a browser would."""
    head = data[:SNIFF_LENGTH]
    for signature, mime_type in _SIGNATURES:
        if head.startswith(signature):
            return mime_type
    if head[:4] == b'RIFF' and head[8:12] == b'WEBP':
        return 'image/webp'
    if head[:4] == b'RIFF' and head[8:12] == b'WAVE':
        return 'audio/wave'
    if head[4:8] == b'ftyp':
        return 'video/mp4'
    try:
        head.decode('utf-8')
    except UnicodeDecodeError as e:
        # A multi-byte character cut by the sniff window is still text
        if e.start < len(head) - 3:
            return 'application/octet-stream'
    if b'\x00' in head:
        return 'application/octet-stream'
    return 'text/plain; charset=utf-8'


def resolve_mime_type(file_path: str, data: bytes, override: str = '') -> str:
    """MIME type for an outgoing file: override, then extension, then content."""
    mime_type = (override or '').strip()
    if not mime_type:
        mime_type = mimetypes.guess_type(file_path.lower())[0] or ''
    if not mime_type:
        mime_type = sniff_mime_type(data)
    return mime_type


def media_kind_for_mime(mime_type: str) -> str:
    if mime_type.startswith('image/'):
        return 'image'
    if mime_type.startswith('video/'):
        return 'video'
    if mime_type.startswith('audio/'):
        return 'audio'
    return 'document'


def build_media_body(
    media: str,
    upload: UploadResponse,
    mime_type: str,
    name: str,
    caption: str,
    context: Optional[ContextInfo] = None,
) -> MessageBody:
    """Structured payload for an uploaded file."""
    common = dict(
        url=upload.url,
        direct_path=upload.direct_path,
        media_key=upload.media_key,
        file_enc_sha256=upload.file_enc_sha256,
        file_sha256=upload.file_sha256,
        file_length=upload.file_length,
        mimetype=mime_type,
        context=context,
    )
    if media == 'image':
        return ImageBody(caption=caption, **common)
    if media == 'video':
        return VideoBody(caption=caption, **common)
    if media == 'audio':
        return AudioBody(ptt=False, **common)
    return DocumentBody(caption=caption, file_name=name, title=name, **common)


async def _write_back(db: DatabaseAdapter, session: Session, to: str, message_data: Dict) -> None:
    """Record a sent message locally; failures are logged, not raised."""
    now = datetime.now(timezone.utc)
    try:
        chat_name = await session.resolve_chat_name(to, '')
        await db.upsert_chat(to, chat_kind(to), chat_name, now)
        await db.upsert_message({
            'chat_jid': to,
            'chat_name': chat_name,
            'sender_jid': '',
            'sender_name': 'me',
            'timestamp': now,
            'from_me': True,
            **message_data,
        })
    except Exception as e:
        logger.warning(f"Sent message {message_data.get('msg_id')} but failed to store it: {e}")


async def send_text(session: Session, db: DatabaseAdapter, to: str, message: str) -> SendOutcome:
    """
    Send a text message and store it.

    Raises:
        SendError: If the session rejects the send
    """
    try:
        msg_id = await session.send_text(to, message)
    except Exception as e:
        raise SendError(f"send failed: {e}") from e

    await _write_back(db, session, to, {
        'msg_id': msg_id,
        'text': message,
        'display_text': message,
    })
    logger.info(f"Sent text message {msg_id} to {to}")
    return SendOutcome(msg_id=msg_id, to=to)


async def send_file(
    session: Session,
    db: DatabaseAdapter,
    to: str,
    file_path: str,
    filename: str = '',
    caption: str = '',
    mime_override: str = '',
    reply_to: str = '',
    reply_to_participant: str = '',
) -> SendOutcome:
    """
    Upload a local file, send it as media and store it.

    Args:
        session: Connected session
        db: Store adapter for the write-back
        to: Recipient JID
        file_path: Local file to send
        filename: Display name override (defaults to the file's base name)
        caption: Caption for images, videos and documents
        mime_override: MIME type override
        reply_to: Optional message id to quote
        reply_to_participant: Author of the quoted message; 'self' means us

    Raises:
        SendError: If reading, uploading or sending fails
    """
    try:
        with open(file_path, 'rb') as f:
            data = f.read()
    except OSError as e:
        raise SendError(f"read file: {e}") from e

    name = (filename or '').strip() or os.path.basename(file_path)
    mime_type = resolve_mime_type(file_path, data, mime_override)
    media = media_kind_for_mime(mime_type)

    try:
        upload = await session.upload(data, media)
    except Exception as e:
        raise SendError(f"upload failed: {e}") from e

    context = None
    if (reply_to or '').strip():
        participant = (reply_to_participant or '').strip()
        if participant.lower() == 'self':
            participant = session.own_jid()
        context = ContextInfo(stanza_id=reply_to.strip(), participant=participant)

    body = build_media_body(media, upload, mime_type, name, caption, context)
    try:
        msg_id = await session.send_structured(to, body)
    except Exception as e:
        raise SendError(f"send failed: {e}") from e

    await _write_back(db, session, to, {
        'msg_id': msg_id,
        'text': caption,
        'media_type': media,
        'media_caption': caption,
        'display_text': MEDIA_LABELS[media],
        'filename': name,
        'mime_type': mime_type,
        'direct_path': upload.direct_path,
        'media_key': upload.media_key,
        'file_sha256': upload.file_sha256,
        'file_enc_sha256': upload.file_enc_sha256,
        'file_length': upload.file_length,
        'reply_to_id': context.stanza_id if context else '',
    })
    logger.info(f"Sent {media} {name} ({mime_type}) as {msg_id} to {to}")
    return SendOutcome(
        msg_id=msg_id,
        to=to,
        file={'name': name, 'mime_type': mime_type, 'media': media},
    )
