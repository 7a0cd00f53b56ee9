"""
Process wiring for WhatsApp Archive.

Builds the session through SESSION_FACTORY, opens the store and runs the
configured sync. In follow mode the send gateway runs alongside the sync
so other processes can send through the same session.
"""

import asyncio
import importlib
import logging
import os
import signal
import sys
from typing import Any, Callable, Dict, Optional

from .backfill import BackfillController, BackfillOptions, BackfillResult
from .config import Config, setup_logging
from .db import DatabaseAdapter, create_adapter
from .errors import GatewayError, NotAuthenticatedError
from .outbound import send_file, send_text
from .send_server import SendRequest, SendResponse, SendServer, send_via_socket
from .session import Session, parse_user_or_jid
from .sync import SyncMode, SyncOptions, SyncOrchestrator, SyncResult

logger = logging.getLogger(__name__)


def load_session_factory(config: Config) -> Callable[..., Session]:
    """
    Import the callable named by SESSION_FACTORY.

    Raises:
        ValueError: If SESSION_FACTORY is unset or does not resolve
    """
    parts = config.session_factory_parts()
    if parts is None:
        raise ValueError(
            "SESSION_FACTORY is not set. Point it at a callable that builds the "
            "messaging session, e.g. 'mypackage.session:create_session'."
        )
    module_name, attr = parts
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ValueError(f"Cannot import SESSION_FACTORY module {module_name!r}: {e}") from e
    factory = getattr(module, attr, None)
    if not callable(factory):
        raise ValueError(f"SESSION_FACTORY {config.session_factory!r} is not a callable")
    return factory


class App:
    """One store directory with its session and database."""

    def __init__(self, config: Config, db: DatabaseAdapter, session: Optional[Session] = None):
        self.config = config
        self.db = db
        self.session = session
        self.orchestrator: Optional[SyncOrchestrator] = None

    @classmethod
    async def create(cls, config: Config, session: Optional[Session] = None) -> "App":
        """
        Factory method to create an App with an initialized store.

        Args:
            config: Configuration object
            session: Session to use instead of SESSION_FACTORY

        Returns:
            Initialized App instance
        """
        db = await create_adapter(config.database_path, disable_fts=config.disable_fts)
        return cls(config, db, session)

    def open_session(self) -> Session:
        """Build the session on first use."""
        if self.session is None:
            factory = load_session_factory(self.config)
            device = self.config.device
            if not device.is_default():
                logger.info(
                    f"Using device identity overrides: os={device.os_name!r} "
                    f"platform={device.platform!r} version={device.version!r}"
                )
            self.session = factory(self.config.session_path, self.config.device)
        return self.session

    def ensure_authed(self) -> Session:
        session = self.open_session()
        if not session.is_authed():
            raise NotAuthenticatedError("not authenticated; pair the session first")
        return session

    def sync_options(self) -> SyncOptions:
        """Sync options from configuration."""
        return SyncOptions(
            mode=SyncMode(self.config.sync_mode),
            allow_qr=False,
            download_media=self.config.download_media,
            refresh_contacts=self.config.refresh_contacts,
            refresh_groups=self.config.refresh_groups,
            idle_exit=self.config.idle_exit_seconds,
        )

    def _new_orchestrator(self, session: Session) -> SyncOrchestrator:
        self.orchestrator = SyncOrchestrator(
            session,
            self.db,
            media_dir=self.config.media_path,
            media_workers=self.config.media_workers,
            media_queue_size=self.config.media_queue_size,
        )
        return self.orchestrator

    async def sync(self, options: Optional[SyncOptions] = None) -> SyncResult:
        """Run one sync; follow mode also serves the send gateway."""
        options = options or self.sync_options()
        session = self.open_session()
        orchestrator = self._new_orchestrator(session)

        server = None
        if SyncMode(options.mode) == SyncMode.FOLLOW and self.config.send_server:
            server = SendServer(session, self.db, self.config.socket_path)
            try:
                await server.start()
            except GatewayError as e:
                logger.warning(f"Send server unavailable, continuing without it: {e}")
                server = None

        try:
            return await orchestrator.run(options)
        finally:
            if server is not None:
                await server.stop()

    async def backfill(self, options: BackfillOptions) -> BackfillResult:
        """Request older history for one chat."""
        session = self.ensure_authed()
        controller = BackfillController(session, self.db, self._new_orchestrator(session))
        return await controller.run(options)

    async def send(self, request: SendRequest) -> Dict[str, Any]:
        return await deliver(self, request)

    def stop(self) -> None:
        """Ask a running sync or backfill to stop."""
        if self.orchestrator is not None:
            self.orchestrator.stop()

    async def close(self) -> None:
        if self.session is not None:
            try:
                await self.session.close()
            except Exception as e:
                logger.warning(f"Error closing session: {e}")
        await self.db.close()


async def deliver(app: App, request: SendRequest) -> Dict[str, Any]:
    """
    Send through a running gateway if there is one, else directly.

    Returns:
        The gateway response dict ({success, id, to, file?})

    Raises:
        SendError: If the send was attempted and failed
        ValueError: If the request is invalid
        NotAuthenticatedError: If a direct send needs pairing first
    """
    if request.file_path:
        request.file_path = os.path.abspath(request.file_path)

    response = await send_via_socket(app.config.store_dir, request)
    if response is not None:
        logger.info(f"Sent through running sync process: {response.get('id')}")
        return response

    to = parse_user_or_jid(request.to)
    if request.is_file:
        if not request.file_path:
            raise ValueError("file_path is required for file sends")
    elif not request.message:
        raise ValueError("to and message are required")

    session = app.ensure_authed()
    if not session.is_connected():
        await session.connect(allow_qr=False)

    if request.is_file:
        outcome = await send_file(
            session, app.db, to, request.file_path,
            filename=request.filename, caption=request.caption, mime_override=request.mime,
        )
    else:
        outcome = await send_text(session, app.db, to, request.message)
    return SendResponse(success=True, id=outcome.msg_id, to=outcome.to, file=outcome.file).to_dict()


async def run_sync(config: Config) -> SyncResult:
    """
    Run the configured sync until idle exit or a shutdown signal.

    Args:
        config: Configuration object
    """
    app = await App.create(config)
    loop = asyncio.get_running_loop()

    def _signal_handler(signum):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        app.stop()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, _signal_handler, signum)
    try:
        return await app.sync()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
        await app.close()


async def main():
    """Main entry point for the sync process."""
    try:
        config = Config()
        setup_logging(config)

        logger.info("=" * 60)
        logger.info("WhatsApp Archive Sync")
        logger.info("=" * 60)
        logger.info(f"Store dir: {config.store_dir}")
        logger.info(f"Sync mode: {config.sync_mode}")
        logger.info(f"Download media: {config.download_media}")
        logger.info(f"Send server: {config.send_server}")
        logger.info("=" * 60)

        result = await run_sync(config)

        logger.info("=" * 60)
        logger.info(f"Sync complete: {result.messages_stored} messages stored")
        logger.info("=" * 60)

    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)
    except NotAuthenticatedError as e:
        logger.error(f"{e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


def run():
    """Console entry point."""
    asyncio.run(main())


if __name__ == '__main__':
    run()
