from fastapi import APIRouter, Depends, Request

from app.api.deps import get_dispatcher, require_cron
from app.schemas.job import DispatchResponse
from app.services.dispatcher import Dispatcher


router = APIRouter(tags=['dispatch'])


@router.post('/dispatch', response_model=DispatchResponse)
async def dispatch(
    request: Request,
    dispatcher: Dispatcher = Depends(get_dispatcher)
):
    source = request.headers.get('x-dispatch-source', 'api')
    claimed = await dispatcher.dispatch(source=source)
    return DispatchResponse(ok=True, claimed=claimed)


@router.post('/cron/dispatch', response_model=DispatchResponse, dependencies=[Depends(require_cron)])
async def cron_dispatch(
    dispatcher: Dispatcher = Depends(get_dispatcher)
):
    claimed = await dispatcher.dispatch(source='cron')
    return DispatchResponse(ok=True, claimed=claimed)
