"""
Tests for background media downloads.
"""

import asyncio
import os
from unittest.mock import AsyncMock, MagicMock

import pytest

from fake_session import FakeSession
from src.media import MediaCoordinator, MediaJob, media_target_path, safe_path_component

CHAT = '111@s.whatsapp.net'


def media_info(**overrides):
    info = {
        'chat_jid': CHAT,
        'msg_id': 'M1',
        'media_type': 'image',
        'filename': '',
        'mime_type': '',
        'direct_path': '/v/t62/m1',
        'media_key': b'key',
        'file_sha256': b'sha',
        'file_enc_sha256': b'enc',
        'file_length': 4,
        'local_path': '',
        'downloaded_at': None,
    }
    info.update(overrides)
    return info


def mock_db(info=None):
    db = MagicMock()
    db.get_media_download_info = AsyncMock(return_value=info)
    db.mark_media_downloaded = AsyncMock()
    return db


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


class TestMediaTargetPath:

    def test_extension_from_filename(self):
        path = media_target_path('/m', media_info(media_type='document', filename='Report.PDF'))
        assert path == os.path.join('/m', CHAT, 'M1.pdf')

    def test_extension_from_mime_type(self):
        assert media_target_path('/m', media_info(mime_type='image/jpeg')).endswith('M1.jpg')
        assert media_target_path('/m', media_info(mime_type='image/png; x=y')).endswith('M1.png')

    @pytest.mark.parametrize('media_type,extension', [
        ('image', '.jpg'),
        ('gif', '.mp4'),
        ('audio', '.ogg'),
        ('sticker', '.webp'),
        ('document', '.bin'),
        ('mystery', '.bin'),
    ])
    def test_default_extension_per_type(self, media_type, extension):
        assert media_target_path('/m', media_info(media_type=media_type)).endswith('M1' + extension)

    def test_unsafe_components_are_cleaned(self):
        assert '/' not in safe_path_component('../../etc')
        assert safe_path_component('..') == '_'
        assert safe_path_component('a b/c') == 'a_b_c'
        assert safe_path_component('') == '_'
        path = media_target_path('/m', media_info(chat_jid='../x', msg_id='id/1'))
        assert path == os.path.join('/m', '_x', 'id_1.jpg')


class TestMediaCoordinator:

    def test_invalid_worker_count(self):
        with pytest.raises(ValueError):
            MediaCoordinator(FakeSession(), mock_db(), '/tmp', workers=0)

    def test_download_writes_file_and_marks_message(self, tmp_path):
        async def scenario():
            session = FakeSession()
            db = mock_db(media_info(mime_type='image/png'))
            coordinator = MediaCoordinator(session, db, str(tmp_path))

            path = await coordinator.download(MediaJob(CHAT, 'M1'))

            assert path == os.path.join(str(tmp_path), CHAT, 'M1.png')
            with open(path, 'rb') as f:
                assert f.read() == b'media:/v/t62/m1'
            args = db.mark_media_downloaded.await_args.args
            assert args[:3] == (CHAT, 'M1', path)
            assert session.downloads[0]['media_type'] == 'image'
            assert coordinator.stats['downloaded'] == 1

        asyncio.run(scenario())

    @pytest.mark.parametrize('info', [
        None,
        media_info(media_type=''),
        media_info(direct_path=''),
    ])
    def test_skips_messages_without_media(self, tmp_path, info):
        async def scenario():
            session = FakeSession()
            coordinator = MediaCoordinator(session, mock_db(info), str(tmp_path))
            assert await coordinator.download(MediaJob(CHAT, 'M1')) is None
            assert coordinator.stats['skipped'] == 1
            assert session.downloads == []

        asyncio.run(scenario())

    def test_skips_already_downloaded(self, tmp_path):
        existing = tmp_path / 'existing.jpg'
        existing.write_bytes(b'x')

        async def scenario():
            session = FakeSession()
            coordinator = MediaCoordinator(session, mock_db(media_info(local_path=str(existing))), str(tmp_path))
            assert await coordinator.download(MediaJob(CHAT, 'M1')) is None
            assert session.downloads == []

        asyncio.run(scenario())

    def test_workers_drain_jobs_queued_before_start(self, tmp_path):
        async def scenario():
            session = FakeSession()
            coordinator = MediaCoordinator(session, mock_db(media_info()), str(tmp_path / 'media'), workers=2)
            coordinator.enqueue(CHAT, 'M1')
            coordinator.enqueue(CHAT, 'M2')
            coordinator.enqueue('', 'M3')
            coordinator.enqueue(CHAT, '  ')
            assert coordinator.stats['enqueued'] == 2

            coordinator.start()
            assert coordinator.running
            await asyncio.wait_for(coordinator.queue.join(), 2)
            await coordinator.stop()

            assert coordinator.stats['downloaded'] == 2
            assert not coordinator.running

        asyncio.run(scenario())

    def test_failures_are_counted_and_workers_keep_going(self, tmp_path):
        async def scenario():
            session = FakeSession()
            session.download_media_to_file = AsyncMock(side_effect=[OSError("disk full"), 4])
            db = mock_db(media_info())
            coordinator = MediaCoordinator(session, db, str(tmp_path), workers=1)
            coordinator.start()
            coordinator.enqueue(CHAT, 'M1')
            coordinator.enqueue(CHAT, 'M2')
            await asyncio.wait_for(coordinator.queue.join(), 2)
            await coordinator.stop()

            assert coordinator.stats['failed'] == 1
            assert coordinator.stats['downloaded'] == 1
            db.mark_media_downloaded.assert_awaited_once()

        asyncio.run(scenario())

    def test_full_queue_never_blocks_enqueue(self, tmp_path):
        async def scenario():
            coordinator = MediaCoordinator(FakeSession(), mock_db(None), str(tmp_path), queue_size=1)
            for i in range(4):
                coordinator.enqueue(CHAT, f"M{i}")
            assert coordinator.queue.qsize() == 1
            assert coordinator.stats['enqueued'] == 4

            coordinator.start()
            await wait_until(lambda: coordinator.stats['skipped'] == 4)
            await coordinator.stop()

        asyncio.run(scenario())

    def test_stop_cancels_pending_spill_and_ignores_new_jobs(self, tmp_path):
        async def scenario():
            coordinator = MediaCoordinator(FakeSession(), mock_db(None), str(tmp_path), queue_size=1)
            coordinator.enqueue(CHAT, 'M1')
            coordinator.enqueue(CHAT, 'M2')
            await asyncio.sleep(0)
            await coordinator.stop()

            coordinator.enqueue(CHAT, 'M3')
            coordinator.start()
            assert coordinator.stats['enqueued'] == 2
            assert coordinator.queue.qsize() == 1
            assert not coordinator.running

        asyncio.run(scenario())
