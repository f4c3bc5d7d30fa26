import io
import os
import asyncio
from typing import Optional

from loguru import logger
from PIL import Image

from app.core.config import settings
from app.services.storage import split_path, upload_bytes


def make_thumbnail(data: bytes, size: int) -> bytes:
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert('RGB')
        img.thumbnail((size, size))
        buf = io.BytesIO()
        img.save(buf, format='JPEG', quality=85)
        return buf.getvalue()


async def create_thumbnail(output_path: str, data: bytes) -> Optional[str]:
    """
    Превью для галереи. Ошибка не критична: вернём None,
    и thumbnail_path останется пустым.
    """
    try:
        thumb = await asyncio.to_thread(make_thumbnail, data, settings.THUMBNAIL_SIZE)
        _, key = split_path(output_path)
        stem = os.path.splitext(key)[0]
        path = f'{settings.THUMBNAILS_BUCKET}/{stem}.jpg'
        await upload_bytes(path=path, data=thumb, content_type='image/jpeg')
        return path
    except Exception as e:
        logger.warning(f'[Storage] thumbnail failed for {output_path}: {e}')
        return None
