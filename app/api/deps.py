from fastapi import Depends, HTTPException, Request
from jose import JWTError
from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.jwt import decode_token
from app.db.session import AsyncSessionLocal


def get_settings():
    return settings


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        yield session


def extract_token(request: Request) -> str | None:
    auth = request.headers.get('Authorization')
    if auth and auth.startswith('Bearer '):
        return auth.split(' ', 1)[1]
    return request.cookies.get('access_token')


def get_current_user_id(request: Request) -> str:
    """
    Пользователи и выдача токенов живут вне сервиса: здесь только
    проверка подписи и sub.
    """
    token = extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail='Unauthorized')

    try:
        payload = decode_token(token)
    except JWTError:
        raise HTTPException(status_code=401, detail='Invalid token')

    if payload.get('type') != 'access' or not payload.get('sub'):
        raise HTTPException(status_code=401, detail='Invalid token type')
    return str(payload['sub'])


def require_cron(request: Request):
    """
    /cron/* открыт, если CRON_SECRET не задан.
    """
    if not settings.CRON_SECRET:
        return
    if request.headers.get('Authorization') != f'Bearer {settings.CRON_SECRET}':
        raise HTTPException(status_code=401, detail='Unauthorized')


def get_dispatcher(request: Request):
    return request.app.state.dispatcher


def get_trigger(request: Request):
    return request.app.state.dispatch_trigger


def get_poller(request: Request):
    return request.app.state.poller


def get_poller_pool(request: Request):
    return request.app.state.poller_pool


def get_prompt_queue(request: Request):
    return request.app.state.prompt_queue
