import json
import sys
from pathlib import Path

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from edit_service import EditAnythingClient
from wizard import FailureReason, MaskPoint, SourceImage


@pytest.fixture
def cat_image():
    return SourceImage(
        data='data:image/png;base64,iVBORw0KGgo=',
        filename='cat.png',
        width=320,
        height=240,
    )


def make_client(handler, **kwargs):
    return EditAnythingClient(
        base_url='https://edit.example.com/',
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestRequestMasks:

    @pytest.mark.asyncio
    async def test_masks_success(self, cat_image):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={'files': ['u1', 'u2'], 'image_id': 'abc'})

        result = await make_client(handler).request_masks(cat_image, MaskPoint(100, 50))

        assert result.success is True
        assert result.files == ('u1', 'u2')
        assert result.image_id == 'abc'

        assert len(requests) == 1
        request = requests[0]
        assert request.method == 'POST'
        assert str(request.url) == 'https://edit.example.com/api/masks'
        assert request.headers['accept'] == 'application/json'
        assert request.headers['content-type'] == 'application/json'
        assert json.loads(request.content) == {
            'image': 'data:image/png;base64,iVBORw0KGgo=',
            'extension': '.png',
            'x': 100,
            'y': 50,
        }

    @pytest.mark.asyncio
    async def test_masks_http_500(self, cat_image):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500, text='internal error')

        result = await make_client(handler).request_masks(cat_image, MaskPoint(100, 50))

        assert result.success is False
        assert result.reason == FailureReason.HTTP_STATUS
        assert 'status 500' in result.error
        assert result.files == ()
        # no retry
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_masks_network_error(self, cat_image):
        def handler(request):
            raise httpx.ConnectError('connection refused', request=request)

        result = await make_client(handler).request_masks(cat_image, MaskPoint(1, 1))

        assert result.success is False
        assert result.reason == FailureReason.TRANSPORT
        assert 'ConnectError' in result.error

    @pytest.mark.asyncio
    async def test_masks_non_json_body(self, cat_image):
        def handler(request):
            return httpx.Response(200, text='<html>oops</html>')

        result = await make_client(handler).request_masks(cat_image, MaskPoint(1, 1))

        assert result.success is False
        assert result.reason == FailureReason.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_masks_missing_image_id(self, cat_image):
        def handler(request):
            return httpx.Response(200, json={'files': ['u1']})

        result = await make_client(handler).request_masks(cat_image, MaskPoint(1, 1))

        assert result.success is False
        assert result.reason == FailureReason.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_custom_endpoint(self, cat_image):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            return httpx.Response(200, json={'files': [], 'image_id': 7})

        client = make_client(handler, masks_endpoint='v2/masks')
        result = await client.request_masks(cat_image, MaskPoint(1, 1))

        assert seen == ['/v2/masks']
        assert result.success is True
        assert result.image_id == '7'


class TestRequestEdit:

    @pytest.mark.asyncio
    async def test_edit_success(self):
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={'files': ['r1', 'r2']})

        result = await make_client(handler).request_edit(
            image_id='abc', extension='.png', mask_id='7', prompt='a hat'
        )

        assert result.success is True
        assert result.files == ('r1', 'r2')
        assert requests[0].url.path == '/api/edit'
        assert json.loads(requests[0].content) == {
            'image_id': 'abc',
            'extension': '.png',
            'mask_id': '7',
            'prompt': 'a hat',
        }

    @pytest.mark.asyncio
    async def test_edit_files_not_a_list(self):
        def handler(request):
            return httpx.Response(200, json={'files': 'r1'})

        result = await make_client(handler).request_edit('abc', '.png', '7', 'a hat')

        assert result.success is False
        assert result.reason == FailureReason.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_edit_http_404(self):
        def handler(request):
            return httpx.Response(404, json={'detail': 'unknown image_id'})

        result = await make_client(handler).request_edit('gone', '.png', '7', 'a hat')

        assert result.success is False
        assert result.reason == FailureReason.HTTP_STATUS
        assert '404' in result.error

    @pytest.mark.asyncio
    async def test_edit_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout('timed out', request=request)

        result = await make_client(handler).request_edit('abc', '.png', '7', 'a hat')

        assert result.success is False
        assert result.reason == FailureReason.TRANSPORT


def test_from_config_uses_service_settings():
    class FakeConfig:
        service_base_url = 'http://localhost:3000'
        masks_endpoint = '/api/masks'
        edit_endpoint = '/api/edit'
        request_timeout = None

    client = EditAnythingClient.from_config(FakeConfig())

    assert client.url_for(client.masks_endpoint) == 'http://localhost:3000/api/masks'
    assert client.url_for(client.edit_endpoint) == 'http://localhost:3000/api/edit'
    assert client.timeout is None
