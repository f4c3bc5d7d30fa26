import os
import time
import uuid
import asyncio
from functools import lru_cache
from typing import Optional, Tuple
from urllib.parse import urlsplit, unquote

import boto3
import httpx
from botocore.config import Config
from loguru import logger

from app.core.config import settings
from app.core.jwt import create_storage_token


CONTENT_TYPE_EXTENSIONS = {
    'image/jpeg': 'jpg',
    'image/jpg': 'jpg',
    'image/png': 'png',
    'image/webp': 'webp',
}

# префиксы, по которым из URL восстанавливается "bucket/key"
URL_PATH_MARKERS = (
    '/storage/signed/',
    '/storage/v1/object/public/',
    '/storage/v1/object/sign/',
    '/storage/',
)


def ensure_dir(path: str):
    os.makedirs(path, exist_ok=True)


def preview_url(url: Optional[str]) -> str:
    """
    Для логов: хост + хвост пути, без query (там токен).
    """
    if not url:
        return '<none>'
    parts = urlsplit(url)
    tail = parts.path[-24:]
    return f'{parts.netloc}...{tail}' if parts.netloc else f'...{tail}'


def normalize_storage_path(path: Optional[str]) -> Optional[str]:
    """
    Приводит путь к виду "bucket/key".
    Понимает наши публичные и подписанные URL, отбрасывает пустые ключи и "..".
    """
    if not path or not isinstance(path, str):
        return None

    value = path.strip()
    if value.startswith(('http://', 'https://')):
        url_path = unquote(urlsplit(value).path)
        for marker in URL_PATH_MARKERS:
            idx = url_path.find(marker)
            if idx != -1:
                value = url_path[idx + len(marker):]
                break
        else:
            return None

    value = value.replace('\\', '/').lstrip('/')
    bucket, _, key = value.partition('/')
    if not bucket or not key:
        return None

    segments = key.split('/')
    if any(s in ('', '.', '..') for s in segments):
        return None
    return f'{bucket}/{key}'


def split_path(path: str) -> Tuple[str, str]:
    bucket, _, key = path.partition('/')
    return bucket, key


def verify_ownership(path: Optional[str], user_id: str) -> bool:
    normalized = normalize_storage_path(path)
    if not normalized:
        return False
    _, key = split_path(normalized)
    return key.split('/', 1)[0] == str(user_id)


def local_file_path(path: str) -> str:
    root = os.path.abspath(settings.STORAGE_ROOT)
    full = os.path.abspath(os.path.join(root, path))
    if os.path.commonpath([root, full]) != root:
        raise ValueError(f'Path escapes storage root: {path}')
    return full


@lru_cache(maxsize=1)
def get_s3_client():
    return boto3.client(
        's3',
        endpoint_url=settings.S3_ENDPOINT,
        aws_access_key_id=settings.S3_ACCESS_KEY,
        aws_secret_access_key=settings.S3_SECRET_KEY,
        region_name=settings.S3_REGION,
        config=Config(signature_version='s3v4')
    )


async def sign_path(path: Optional[str], ttl_seconds: Optional[int] = None) -> Optional[str]:
    """
    Короткоживущий URL для провайдера. None, если путь невалиден
    или объект недоступен.
    """
    normalized = normalize_storage_path(path)
    if not normalized:
        logger.warning(f'[Storage] cannot normalize path: {path!r}')
        return None

    ttl = ttl_seconds or settings.PROVIDER_SIGN_TTL_S

    try:
        if settings.STORAGE_BACKEND == 's3':
            bucket, key = split_path(normalized)
            return await asyncio.to_thread(
                get_s3_client().generate_presigned_url,
                'get_object',
                Params={'Bucket': bucket, 'Key': key},
                ExpiresIn=ttl
            )

        if not os.path.isfile(local_file_path(normalized)):
            logger.warning(f'[Storage] object not found: {normalized}')
            return None

        token = create_storage_token(normalized, ttl)
        return f'{settings.PUBLIC_BASE_URL.rstrip("/")}/storage/signed/{normalized}?token={token}'

    except Exception as e:
        logger.warning(f'[Storage] sign failed for {normalized}: {e}')
        return None


async def upload_bytes(
        *,
        path: str,
        data: bytes,
        content_type: str = 'image/jpeg'
) -> str:
    if settings.STORAGE_BACKEND == 's3':
        bucket, key = split_path(path)
        await asyncio.to_thread(
            get_s3_client().put_object,
            Bucket=bucket,
            Key=key,
            Body=data,
            ContentType=content_type
        )
        return path

    file_path = local_file_path(path)
    ensure_dir(os.path.dirname(file_path))
    with open(file_path, 'wb') as f:
        f.write(data)
    return path


async def read_bytes(path: str) -> bytes:
    if settings.STORAGE_BACKEND == 's3':
        bucket, key = split_path(path)
        response = await asyncio.to_thread(get_s3_client().get_object, Bucket=bucket, Key=key)
        return response['Body'].read()

    with open(local_file_path(path), 'rb') as f:
        return f.read()


def _guess_extension(url: str, content_type: Optional[str]) -> str:
    if content_type:
        ext = CONTENT_TYPE_EXTENSIONS.get(content_type.split(';')[0].strip().lower())
        if ext:
            return ext
    suffix = os.path.splitext(urlsplit(url).path)[1].lstrip('.').lower()
    if suffix in ('jpg', 'jpeg', 'png', 'webp'):
        return 'jpg' if suffix == 'jpeg' else suffix
    return 'jpg'


async def fetch_and_save_to_outputs(
        remote_url: str,
        user_id: str,
        *,
        client: Optional[httpx.AsyncClient] = None
) -> Tuple[str, bytes]:
    """
    Скачивает результат провайдера и кладёт в outputs/<user_id>/<ms>-<random>.<ext>.
    Возвращает (object path, байты) - байты нужны для превью.
    """
    timeout = httpx.Timeout(10.0, read=120.0)
    if client is None:
        async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as own_client:
            response = await own_client.get(remote_url)
    else:
        response = await client.get(remote_url)

    if response.status_code != 200:
        raise RuntimeError(f'Fetch output failed: HTTP {response.status_code}')

    content_type = response.headers.get('content-type', 'image/jpeg')
    ext = _guess_extension(remote_url, content_type)
    key = f'{user_id}/{int(time.time() * 1000)}-{uuid.uuid4().hex[:10]}.{ext}'
    path = f'{settings.OUTPUTS_BUCKET}/{key}'

    await upload_bytes(path=path, data=response.content, content_type=content_type.split(';')[0])
    logger.info(f'[Storage] saved output {path} from {preview_url(remote_url)}')
    return path, response.content
