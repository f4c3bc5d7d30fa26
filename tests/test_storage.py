import io
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from PIL import Image

from app.core.jwt import verify_storage_token
from app.services.storage import (
    fetch_and_save_to_outputs,
    local_file_path,
    normalize_storage_path,
    read_bytes,
    sign_path,
    verify_ownership,
)
from app.services.thumbnails import create_thumbnail


@pytest.mark.parametrize('value, expected', [
    ('uploads/u1/a.jpg', 'uploads/u1/a.jpg'),
    ('/uploads/u1/a.jpg', 'uploads/u1/a.jpg'),
    ('https://x.supabase.co/storage/v1/object/public/uploads/u1/a.jpg', 'uploads/u1/a.jpg'),
    ('https://x.supabase.co/storage/v1/object/sign/outputs/u1/b.png?token=t', 'outputs/u1/b.png'),
    ('http://testserver/storage/signed/outputs/u1/c.png?token=t', 'outputs/u1/c.png'),
    ('https://cdn.other.com/a.jpg', None),
    ('uploads/../secrets.txt', None),
    ('uploads/', None),
    ('', None),
    (None, None),
])
def test_normalize_storage_path(value, expected):
    assert normalize_storage_path(value) == expected


def test_verify_ownership():
    assert verify_ownership('uploads/u1/a.jpg', 'u1')
    assert not verify_ownership('uploads/u2/a.jpg', 'u1')
    assert not verify_ownership('uploads/../u1/a.jpg', 'u1')


def test_local_path_stays_inside_root():
    with pytest.raises(ValueError):
        local_file_path('../outside.txt')


async def test_sign_local_file(put_file):
    put_file('uploads/u1/a.jpg')

    url = await sign_path('uploads/u1/a.jpg', 60)

    parts = urlsplit(url)
    assert url.startswith('http://testserver/storage/signed/uploads/u1/a.jpg?token=')
    token = parse_qs(parts.query)['token'][0]
    assert verify_storage_token(token, 'uploads/u1/a.jpg')
    assert not verify_storage_token(token, 'uploads/u1/other.jpg')


async def test_sign_missing_or_invalid_returns_none():
    assert await sign_path('uploads/u1/missing.jpg') is None
    assert await sign_path('not-a-path') is None


async def test_fetch_and_save_to_outputs():
    def handler(request):
        return httpx.Response(200, content=b'\x89PNG data', headers={'content-type': 'image/png'})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        path, content = await fetch_and_save_to_outputs('https://cdn.test/out/x', 'u1', client=client)

    assert path.startswith('outputs/u1/')
    assert path.endswith('.png')
    assert content == b'\x89PNG data'
    assert await read_bytes(path) == content


async def test_fetch_failure_raises():
    async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(404))) as client:
        with pytest.raises(RuntimeError):
            await fetch_and_save_to_outputs('https://cdn.test/out/x.png', 'u1', client=client)


async def test_create_thumbnail():
    buf = io.BytesIO()
    Image.new('RGB', (2048, 1024), 'red').save(buf, format='PNG')

    path = await create_thumbnail('outputs/u1/123-abc.png', buf.getvalue())

    assert path == 'thumbnails/u1/123-abc.jpg'
    with Image.open(io.BytesIO(await read_bytes(path))) as thumb:
        assert max(thumb.size) == 512


async def test_create_thumbnail_ignores_broken_images():
    assert await create_thumbnail('outputs/u1/x.png', b'not an image') is None
