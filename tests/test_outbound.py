"""
Tests for outbound text and file sends.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from fake_session import FakeSession
from src.db import create_adapter
from src.errors import SendError
from src.outbound import (
    media_kind_for_mime, resolve_mime_type, send_file, send_text, sniff_mime_type,
)
from src.session import AudioBody, DocumentBody, ImageBody, VideoBody

CHAT = '111@s.whatsapp.net'
PNG = b'\x89PNG\r\n\x1a\n' + b'\x00' * 16


class TestMimeDetection:

    @pytest.mark.parametrize('data,expected', [
        (PNG, 'image/png'),
        (b'\xff\xd8\xff\xe0rest', 'image/jpeg'),
        (b'GIF89a...', 'image/gif'),
        (b'%PDF-1.7\n', 'application/pdf'),
        (b'RIFF\x00\x00\x00\x00WEBPVP8 ', 'image/webp'),
        (b'\x00\x00\x00\x18ftypmp42', 'video/mp4'),
        (b'OggS\x00\x02', 'application/ogg'),
        (b'hello, plain text\n', 'text/plain; charset=utf-8'),
        (b'bin\x00ary', 'application/octet-stream'),
        (b'\xfe\xfe\xfe\xfe' * 10, 'application/octet-stream'),
    ])
    def test_sniff(self, data, expected):
        assert sniff_mime_type(data) == expected

    def test_truncated_multibyte_text_is_still_text(self):
        # 'a' plus 2-byte characters puts a cut character at the window edge
        data = ('a' + 'é' * 300).encode('utf-8')
        assert sniff_mime_type(data) == 'text/plain; charset=utf-8'

    def test_resolution_order(self):
        assert resolve_mime_type('a.png', b'%PDF-', override=' video/mp4 ') == 'video/mp4'
        assert resolve_mime_type('A.PNG', b'%PDF-') == 'image/png'
        assert resolve_mime_type('blob', b'%PDF-1.4') == 'application/pdf'

    @pytest.mark.parametrize('mime_type,kind', [
        ('image/webp', 'image'),
        ('video/mp4', 'video'),
        ('audio/ogg', 'audio'),
        ('application/pdf', 'document'),
        ('text/plain; charset=utf-8', 'document'),
    ])
    def test_media_kind(self, mime_type, kind):
        assert media_kind_for_mime(mime_type) == kind


def run_with_db(tmp_path, scenario):
    async def _run():
        db = await create_adapter(str(tmp_path / 'wacli.db'))
        try:
            return await scenario(db)
        finally:
            await db.close()
    return asyncio.run(_run())


class TestSendText:

    def test_send_and_write_back(self, tmp_path):
        async def scenario(db):
            session = FakeSession()
            outcome = await send_text(session, db, CHAT, 'hello there')

            assert outcome.msg_id == 'SENT1'
            assert outcome.to == CHAT
            assert session.sent == [(CHAT, 'hello there')]

            stored = await db.get_message(CHAT, 'SENT1')
            assert stored['from_me'] is True
            assert stored['sender_name'] == 'me'
            assert stored['text'] == 'hello there'
            assert stored['display_text'] == 'hello there'
            assert (await db.get_chat(CHAT))['kind'] == 'dm'

        run_with_db(tmp_path, scenario)

    def test_send_failure(self, tmp_path):
        async def scenario(db):
            session = FakeSession()
            session.send_error = ConnectionError("socket closed")
            with pytest.raises(SendError, match="send failed: socket closed"):
                await send_text(session, db, CHAT, 'hi')
            assert await db.count_messages() == 0

        run_with_db(tmp_path, scenario)

    def test_write_back_failure_is_not_fatal(self):
        db = MagicMock()
        db.upsert_chat = AsyncMock(side_effect=RuntimeError("disk I/O error"))
        db.upsert_message = AsyncMock()
        outcome = asyncio.run(send_text(FakeSession(), db, CHAT, 'hi'))
        assert outcome.msg_id == 'SENT1'
        db.upsert_message.assert_not_awaited()


class TestSendFile:

    def test_image_send(self, tmp_path):
        path = tmp_path / 'cat.png'
        path.write_bytes(PNG)

        async def scenario(db):
            session = FakeSession()
            outcome = await send_file(session, db, CHAT, str(path), caption='look')

            assert outcome.file == {'name': 'cat.png', 'mime_type': 'image/png', 'media': 'image'}
            assert session.uploads == [(PNG, 'image')]
            to, body = session.sent[0]
            assert to == CHAT
            assert isinstance(body, ImageBody)
            assert body.caption == 'look'
            assert body.direct_path == '/v/t62/upload'
            assert body.context is None

            stored = await db.get_message(CHAT, outcome.msg_id)
            assert stored['media_type'] == 'image'
            assert stored['display_text'] == 'Sent image'
            assert stored['filename'] == 'cat.png'
            info = await db.get_media_download_info(CHAT, outcome.msg_id)
            assert info['media_key'] == b'key'
            assert info['file_length'] == len(PNG)

        run_with_db(tmp_path, scenario)

    def test_document_with_name_override_and_reply(self, tmp_path):
        path = tmp_path / 'notes.txt'
        path.write_text('minutes of the meeting')

        async def scenario(db):
            session = FakeSession()
            outcome = await send_file(
                session, db, CHAT, str(path), filename='Minutes.txt',
                reply_to='Q1', reply_to_participant='self',
            )
            body = session.sent[0][1]
            assert isinstance(body, DocumentBody)
            assert body.file_name == 'Minutes.txt'
            assert body.title == 'Minutes.txt'
            assert body.context.stanza_id == 'Q1'
            assert body.context.participant == session.own_jid()
            assert outcome.file['media'] == 'document'

            stored = await db.get_message(CHAT, outcome.msg_id)
            assert stored['reply_to_id'] == 'Q1'
            assert stored['display_text'] == 'Sent document'

        run_with_db(tmp_path, scenario)

    @pytest.mark.parametrize('mime_type,body_type', [
        ('video/mp4', VideoBody),
        ('audio/ogg', AudioBody),
    ])
    def test_mime_override_selects_payload(self, tmp_path, mime_type, body_type):
        path = tmp_path / 'clip.bin'
        path.write_bytes(b'\x00\x01')

        async def scenario(db):
            session = FakeSession()
            await send_file(session, db, CHAT, str(path), mime_override=mime_type)
            assert isinstance(session.sent[0][1], body_type)
            assert session.sent[0][1].mimetype == mime_type

        run_with_db(tmp_path, scenario)

    def test_missing_file(self, tmp_path):
        async def scenario(db):
            with pytest.raises(SendError, match="read file"):
                await send_file(FakeSession(), db, CHAT, str(tmp_path / 'nope.png'))

        run_with_db(tmp_path, scenario)

    def test_upload_failure(self, tmp_path):
        path = tmp_path / 'cat.png'
        path.write_bytes(PNG)

        async def scenario(db):
            session = FakeSession()
            session.upload_error = TimeoutError("media server")
            with pytest.raises(SendError, match="upload failed"):
                await send_file(session, db, CHAT, str(path))
            assert session.sent == []

        run_with_db(tmp_path, scenario)

    def test_send_failure_after_upload(self, tmp_path):
        path = tmp_path / 'cat.png'
        path.write_bytes(PNG)

        async def scenario(db):
            session = FakeSession()
            session.send_error = ConnectionError("gone")
            with pytest.raises(SendError, match="send failed"):
                await send_file(session, db, CHAT, str(path))
            assert len(session.uploads) == 1
            assert await db.count_messages() == 0

        run_with_db(tmp_path, scenario)
