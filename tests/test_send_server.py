"""
Tests for the Unix socket send gateway.
"""

import asyncio
import json
import os
import shutil
import stat
import tempfile

import pytest

from fake_session import FakeSession
from src.db import create_adapter
from src.errors import SendError
from src.send_server import SendRequest, SendResponse, SendServer, send_socket_path, send_via_socket

PNG = b'\x89PNG\r\n\x1a\n' + b'\x00' * 16


@pytest.fixture
def store_dir():
    # Unix socket paths are limited to ~100 bytes, so stay short
    path = tempfile.mkdtemp(prefix='wa')
    yield path
    shutil.rmtree(path, ignore_errors=True)


def with_server(store_dir, scenario, session=None):
    if session is None:
        session = FakeSession()
        session.connected = True

    async def _run():
        db = await create_adapter(os.path.join(store_dir, 'wacli.db'))
        server = SendServer(session, db, send_socket_path(store_dir))
        await server.start()
        try:
            return await scenario(server)
        finally:
            await server.stop()
            await db.close()
    return asyncio.run(_run())


class TestSendRequest:

    def test_from_dict_ignores_unknown_keys(self):
        request = SendRequest.from_dict({'to': '111', 'message': 'hi', 'extra': 1})
        assert request.to == '111'
        assert request.message == 'hi'
        assert request.is_file is False

    def test_type_is_case_insensitive(self):
        assert SendRequest(type=' FILE ').is_file

    @pytest.mark.parametrize('data', [[1, 2], 'text', {'to': 5}])
    def test_from_dict_rejects_bad_shapes(self, data):
        with pytest.raises(ValueError):
            SendRequest.from_dict(data)

    def test_to_dict_drops_empty_fields(self):
        assert SendRequest(to='111', message='hi').to_dict() == {'to': '111', 'message': 'hi'}

    def test_response_omits_empty_keys(self):
        assert SendResponse(error='boom').to_dict() == {'success': False, 'error': 'boom'}
        assert SendResponse(success=True, id='X', to='t').to_dict() == {'success': True, 'id': 'X', 'to': 't'}


class TestHandleRequest:

    @pytest.mark.parametrize('line,error', [
        (b'', 'no input'),
        (b'   \n', 'no input'),
        (b'{not json', 'invalid json'),
        (b'[1]', 'invalid json'),
        (b'{"message": "hi"}', 'to is required'),
        (b'{"to": "abc@", "message": "hi"}', 'invalid recipient'),
        (b'{"to": "111", "type": "file"}', 'file_path is required for file sends'),
        (b'{"to": "111"}', 'to and message are required'),
    ])
    def test_validation_errors(self, store_dir, line, error):
        async def scenario(server):
            response = await server.handle_request(line)
            assert response.success is False
            assert response.error.startswith(error)
            assert server.session.sent == []

        with_server(store_dir, scenario)

    def test_text_send(self, store_dir):
        async def scenario(server):
            response = await server.handle_request(b'{"to": "111", "message": "hi"}')
            assert response.to_dict() == {'success': True, 'id': 'SENT1', 'to': '111@s.whatsapp.net'}
            assert server.stats == {'requests': 1, 'sent': 1, 'failed': 0}
            assert await server.db.get_message('111@s.whatsapp.net', 'SENT1') is not None

        with_server(store_dir, scenario)

    def test_session_failure_is_reported(self, store_dir):
        session = FakeSession()
        session.connected = True
        session.send_error = ConnectionError("not connected")

        async def scenario(server):
            response = await server.handle_request(b'{"to": "111", "message": "hi"}')
            assert response.error == 'send failed: not connected'
            assert server.stats['failed'] == 1

        with_server(store_dir, scenario, session)

    def test_disconnected_session_is_refused(self, store_dir):
        session = FakeSession()

        async def scenario(server):
            response = await server.handle_request(b'{"to": "111", "message": "hi"}')
            assert response.error == 'not connected'
            assert session.sent == []

        with_server(store_dir, scenario, session)


class TestSocket:

    def test_socket_is_private_and_removed_on_stop(self, store_dir):
        path = send_socket_path(store_dir)

        async def scenario(server):
            mode = os.stat(path).st_mode
            assert stat.S_ISSOCK(mode)
            assert stat.S_IMODE(mode) == 0o600

        with_server(store_dir, scenario)
        assert not os.path.exists(path)

    def test_stale_socket_file_is_replaced(self, store_dir):
        with open(send_socket_path(store_dir), 'w') as f:
            f.write('stale')

        async def scenario(server):
            assert stat.S_ISSOCK(os.stat(send_socket_path(store_dir)).st_mode)

        with_server(store_dir, scenario)

    def test_text_round_trip(self, store_dir):
        async def scenario(server):
            return await send_via_socket(store_dir, SendRequest(to='111', message='hello'))

        response = with_server(store_dir, scenario)
        assert response == {'success': True, 'id': 'SENT1', 'to': '111@s.whatsapp.net'}

    def test_file_round_trip(self, store_dir):
        file_path = os.path.join(store_dir, 'cat.png')
        with open(file_path, 'wb') as f:
            f.write(PNG)

        async def scenario(server):
            return await send_via_socket(
                store_dir, SendRequest(to='111', type='file', file_path=file_path, caption='look')
            )

        response = with_server(store_dir, scenario)
        assert response['success'] is True
        assert response['file'] == {'name': 'cat.png', 'mime_type': 'image/png', 'media': 'image'}

    def test_error_response_raises(self, store_dir):
        async def scenario(server):
            with pytest.raises(SendError, match="read file"):
                await send_via_socket(
                    store_dir, SendRequest(to='111', type='file', file_path='/nonexistent/x.png')
                )

        with_server(store_dir, scenario)

    def test_raw_invalid_line(self, store_dir):
        async def scenario(server):
            reader, writer = await asyncio.open_unix_connection(send_socket_path(store_dir))
            writer.write(b'nonsense\n')
            await writer.drain()
            line = await reader.readline()
            writer.close()
            await writer.wait_closed()
            return json.loads(line)

        response = with_server(store_dir, scenario)
        assert response['success'] is False
        assert response['error'].startswith('invalid json')

    def test_no_server_returns_none(self, store_dir):
        result = asyncio.run(send_via_socket(store_dir, SendRequest(to='111', message='hi')))
        assert result is None
