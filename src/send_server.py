"""
Send gateway over a Unix socket.

While a follow sync holds the live session, other processes submit sends
through <store_dir>/send.sock instead of opening a second session. Each
connection carries one JSON request line and gets one JSON response line.

Request:  {"to": "...", "message": "...", "type": "text"|"file",
           "file_path": "...", "filename": "...", "caption": "...", "mime": "..."}
Response: {"success": true, "id": "...", "to": "...", "file": {...}}
          {"success": false, "error": "..."}
"""

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from typing import Any, Dict, Optional

from .db.adapter import DatabaseAdapter
from .errors import GatewayError, NotConnectedError, SendError
from .outbound import send_file, send_text
from .session import Session, parse_user_or_jid

logger = logging.getLogger(__name__)

SOCKET_NAME = 'send.sock'
TEXT_DEADLINE = 30.0
FILE_DEADLINE = 120.0
MAX_REQUEST_BYTES = 1024 * 1024


def send_socket_path(store_dir: str) -> str:
    """Path of the send socket for a store directory."""
    return os.path.join(store_dir, SOCKET_NAME)


@dataclass
class SendRequest:
    to: str = ''
    message: str = ''
    type: str = ''  # "text" (default) or "file"
    file_path: str = ''
    filename: str = ''
    caption: str = ''
    mime: str = ''

    @property
    def is_file(self) -> bool:
        return self.type.strip().lower() == 'file'

    @classmethod
    def from_dict(cls, data: Any) -> 'SendRequest':
        """
        Build a request from decoded JSON. Unknown keys are ignored.

        Raises:
            ValueError: If data is not an object or a field is not a string
        """
        if not isinstance(data, dict):
            raise ValueError("request must be a JSON object")
        values = {}
        for f in fields(cls):
            value = data.get(f.name)
            if value is None:
                continue
            if not isinstance(value, str):
                raise ValueError(f"field {f.name!r} must be a string")
            values[f.name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, str]:
        return {k: v for k, v in asdict(self).items() if v}


@dataclass
class SendResponse:
    success: bool = False
    id: str = ''
    to: str = ''
    error: str = ''
    file: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serializable form; empty optional keys are omitted."""
        out: Dict[str, Any] = {'success': self.success}
        for key in ('id', 'to', 'error', 'file'):
            value = getattr(self, key)
            if value:
                out[key] = value
        return out


class SendServer:
    """Accepts send requests and performs them through the live session."""

    def __init__(self, session: Session, db: DatabaseAdapter, socket_path: str):
        self.session = session
        self.db = db
        self.socket_path = socket_path
        self.server: Optional[asyncio.AbstractServer] = None
        self.stats = {'requests': 0, 'sent': 0, 'failed': 0}

    async def start(self) -> None:
        """
        Bind the socket, replacing a stale file from an unclean shutdown.

        Raises:
            GatewayError: If the socket cannot be bound
        """
        try:
            os.remove(self.socket_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise GatewayError(f"remove stale socket {self.socket_path}: {e}") from e

        try:
            self.server = await asyncio.start_unix_server(
                self._handle_connection, path=self.socket_path, limit=MAX_REQUEST_BYTES
            )
        except OSError as e:
            raise GatewayError(f"listen on {self.socket_path}: {e}") from e

        os.chmod(self.socket_path, 0o600)
        logger.info(f"Send server listening on {self.socket_path}")

    async def stop(self) -> None:
        """Stop accepting requests and remove the socket file."""
        if self.server is None:
            return
        self.server.close()
        await self.server.wait_closed()
        self.server = None
        try:
            os.remove(self.socket_path)
        except FileNotFoundError:
            pass
        logger.info("Send server stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            try:
                line = await asyncio.wait_for(reader.readline(), TEXT_DEADLINE)
            except asyncio.TimeoutError:
                response = SendResponse(error="timed out")
            except ValueError as e:
                response = SendResponse(error=f"invalid json: {e}")
            else:
                response = await self.handle_request(line)

            writer.write(json.dumps(response.to_dict()).encode('utf-8') + b'\n')
            await writer.drain()
        except (ConnectionError, OSError) as e:
            logger.debug(f"Send client went away: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (ConnectionError, OSError):
                pass

    async def handle_request(self, line: bytes) -> SendResponse:
        """Validate one request line and perform the send."""
        if not line or not line.strip():
            return SendResponse(error="no input")
        self.stats['requests'] += 1

        try:
            request = SendRequest.from_dict(json.loads(line))
        except ValueError as e:
            return SendResponse(error=f"invalid json: {e}")

        if not request.to:
            return SendResponse(error="to is required")
        try:
            to = parse_user_or_jid(request.to)
        except ValueError as e:
            return SendResponse(error=f"invalid recipient: {e}")

        if request.is_file:
            if not request.file_path:
                return SendResponse(error="file_path is required for file sends")
            deadline = FILE_DEADLINE
        else:
            if not request.message:
                return SendResponse(error="to and message are required")
            deadline = TEXT_DEADLINE

        try:
            response = await asyncio.wait_for(self._send(request, to), deadline)
        except asyncio.TimeoutError:
            response = SendResponse(error="timed out")
        except (NotConnectedError, SendError) as e:
            response = SendResponse(error=str(e))

        if response.success:
            self.stats['sent'] += 1
        else:
            self.stats['failed'] += 1
            logger.warning(f"Send to {to} failed: {response.error}")
        return response

    async def _send(self, request: SendRequest, to: str) -> SendResponse:
        if not self.session.is_connected():
            raise NotConnectedError("not connected")
        if request.is_file:
            outcome = await send_file(
                self.session, self.db, to, request.file_path,
                filename=request.filename, caption=request.caption, mime_override=request.mime,
            )
        else:
            outcome = await send_text(self.session, self.db, to, request.message)
        return SendResponse(success=True, id=outcome.msg_id, to=outcome.to, file=outcome.file)


async def send_via_socket(store_dir: str, request: SendRequest, timeout: float = FILE_DEADLINE) -> Optional[Dict[str, Any]]:
    """
    Submit a send to a running gateway.

    Returns:
        The decoded response, or None if no gateway is listening (the
        caller should send through its own session instead)

    Raises:
        SendError: If the gateway answered with an error or no answer
    """
    path = send_socket_path(store_dir)
    if not os.path.exists(path):
        return None
    try:
        reader, writer = await asyncio.open_unix_connection(path, limit=MAX_REQUEST_BYTES)
    except (ConnectionRefusedError, FileNotFoundError):
        return None

    try:
        writer.write(json.dumps(request.to_dict()).encode('utf-8') + b'\n')
        await writer.drain()
        line = await asyncio.wait_for(reader.readline(), timeout)
    except asyncio.TimeoutError as e:
        raise SendError("timed out waiting for send server") from e
    finally:
        writer.close()
        try:
            await writer.wait_closed()
        except (ConnectionError, OSError):
            pass

    if not line:
        raise SendError("send server closed the connection without a response")
    try:
        response = json.loads(line)
    except ValueError as e:
        raise SendError(f"invalid response from send server: {e}") from e
    if not response.get('success'):
        raise SendError(response.get('error') or "send failed")
    return response
