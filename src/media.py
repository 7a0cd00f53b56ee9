"""
Background media downloads.

A fixed pool of workers drains a bounded queue of (chat, message) jobs.
Enqueueing never blocks event processing: when the queue is full the job
is handed to a background task that waits for room, and that task is
cancelled on shutdown like the workers themselves.
"""

import asyncio
import logging
import mimetypes
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set

from .db.adapter import DatabaseAdapter
from .session import Session

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
DEFAULT_QUEUE_SIZE = 512

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._@-]+')


@dataclass(frozen=True)
class MediaJob:
    chat_jid: str
    msg_id: str


def safe_path_component(value: str) -> str:
    """Make a JID or message id usable as a single path component."""
    cleaned = _UNSAFE_CHARS.sub('_', (value or '').strip()).strip('.')
    return cleaned or '_'


def _media_extension(media_type: str) -> str:
    """Get file extension for media type (fallback only)."""
    extensions = {
        'image': '.jpg',
        'video': '.mp4',
        'gif': '.mp4',
        'audio': '.ogg',
        'sticker': '.webp',
        'document': '.bin',
    }
    return extensions.get(media_type, '.bin')


def media_target_path(media_dir: str, info: Dict[str, Any]) -> str:
    """
    Where a message's media is saved: <media_dir>/<chat>/<msg_id><ext>.

    The extension comes from the original filename, else the MIME type,
    else a default for the media type.
    """
    extension = os.path.splitext(info.get('filename') or '')[1].lower()

    mime_type = (info.get('mime_type') or '').split(';', 1)[0].strip()
    if not extension and mime_type:
        guessed = mimetypes.guess_extension(mime_type)
        if guessed:
            extension = guessed
            # Fix common mimetypes oddities
            if extension == '.jpe':
                extension = '.jpg'

    if not extension:
        extension = _media_extension(info.get('media_type') or '')

    chat_dir = os.path.join(media_dir, safe_path_component(info['chat_jid']))
    return os.path.join(chat_dir, f"{safe_path_component(info['msg_id'])}{extension}")


class MediaCoordinator:
    """Bounded worker pool that downloads media referenced by stored messages."""

    def __init__(
        self,
        session: Session,
        db: DatabaseAdapter,
        media_dir: str,
        workers: int = DEFAULT_WORKERS,
        queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        """
        Args:
            session: Connected session used for downloads
            db: Store adapter holding the media descriptors
            media_dir: Root directory for downloaded files
            workers: Number of concurrent download workers
            queue_size: Bound of the pending job queue
        """
        if workers <= 0:
            raise ValueError("workers must be positive")
        self.session = session
        self.db = db
        self.media_dir = media_dir
        self.worker_count = workers
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._workers: List[asyncio.Task] = []
        self._spill_tasks: Set[asyncio.Task] = set()
        self._running = False
        self._closed = False
        self.stats = {
            'enqueued': 0,
            'downloaded': 0,
            'skipped': 0,
            'failed': 0,
        }

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start the worker tasks. Must be called from a running event loop."""
        if self._running or self._closed:
            return
        os.makedirs(self.media_dir, mode=0o700, exist_ok=True)
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"media-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Media downloads enabled ({self.worker_count} workers, queue {self.queue.maxsize})")

    def enqueue(self, chat_jid: str, msg_id: str) -> None:
        """
        Queue a download without blocking; blank ids are ignored.

        Jobs queued before start() wait for the workers.
        """
        if self._closed:
            return
        if not (chat_jid or '').strip() or not (msg_id or '').strip():
            return
        job = MediaJob(chat_jid, msg_id)
        self.stats['enqueued'] += 1
        try:
            self.queue.put_nowait(job)
        except asyncio.QueueFull:
            task = asyncio.create_task(self.queue.put(job))
            self._spill_tasks.add(task)
            task.add_done_callback(self._spill_tasks.discard)

    async def stop(self) -> None:
        """Cancel workers and pending spill tasks; queued jobs are abandoned."""
        self._closed = True
        was_running = self._running
        self._running = False
        tasks = list(self._spill_tasks) + self._workers
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._spill_tasks.clear()
        if not was_running:
            return
        logger.info(
            f"Media workers stopped: {self.stats['downloaded']} downloaded, "
            f"{self.stats['skipped']} skipped, {self.stats['failed']} failed"
        )

    async def _worker(self, index: int) -> None:
        while True:
            job = await self.queue.get()
            try:
                await self.download(job)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats['failed'] += 1
                logger.warning(f"Media download failed for {job.chat_jid}/{job.msg_id}: {e}")
            finally:
                self.queue.task_done()

    async def download(self, job: MediaJob) -> Optional[str]:
        """
        Download one message's media if it is not already on disk.

        Returns:
            The local path written, or None if the job was skipped
        """
        info = await self.db.get_media_download_info(job.chat_jid, job.msg_id)
        if info is None or not info['media_type'] or not info['direct_path']:
            self.stats['skipped'] += 1
            return None
        if info['local_path'] and os.path.exists(info['local_path']):
            self.stats['skipped'] += 1
            return None

        target_path = media_target_path(self.media_dir, info)
        os.makedirs(os.path.dirname(target_path), mode=0o700, exist_ok=True)

        await self.session.download_media_to_file(
            info['direct_path'],
            info['file_enc_sha256'],
            info['file_sha256'],
            info['media_key'],
            info['file_length'],
            info['media_type'],
            target_path,
        )
        await self.db.mark_media_downloaded(
            job.chat_jid, job.msg_id, target_path, datetime.now(timezone.utc)
        )
        self.stats['downloaded'] += 1
        logger.debug(f"Downloaded media {job.chat_jid}/{job.msg_id} -> {target_path}")
        return target_path
