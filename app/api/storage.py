import os

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import FileResponse

from app.api.deps import get_current_user_id
from app.core.config import settings
from app.core.jwt import verify_storage_token
from app.services.storage import (
    local_file_path,
    normalize_storage_path,
    sign_path,
    verify_ownership,
)


router = APIRouter(prefix='/storage', tags=['storage'])

USER_SIGN_TTL_S = 4 * 60 * 60


@router.get('/sign')
async def sign(
    path: str = Query(...),
    user_id: str = Depends(get_current_user_id)
):
    normalized = normalize_storage_path(path)
    if not normalized:
        raise HTTPException(status_code=400, detail='Invalid path')
    if not verify_ownership(normalized, user_id):
        raise HTTPException(status_code=403, detail='Forbidden')

    url = await sign_path(normalized, USER_SIGN_TTL_S)
    if not url:
        raise HTTPException(status_code=404, detail='Object not found')
    return {'url': url}


@router.get('/signed/{path:path}')
async def signed(
    path: str,
    token: str = Query(...)
):
    if settings.STORAGE_BACKEND != 'local':
        raise HTTPException(status_code=404, detail='Not found')

    normalized = normalize_storage_path(path)
    if not normalized or not verify_storage_token(token, normalized):
        raise HTTPException(status_code=403, detail='Invalid or expired token')

    file_path = local_file_path(normalized)
    if not os.path.isfile(file_path):
        raise HTTPException(status_code=404, detail='Not found')
    return FileResponse(file_path)
