from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from ..crud import get_user_details, list_contacts
from ..gate import RequestContext, require_auth
from ..models import get_session
from ..schemas.common import Envelope
from ..schemas.users import ContactsData, UserDetailsData

router = APIRouter()


@router.get('', response_model=Envelope[ContactsData])
async def contacts(
    search: str = '',
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1),
    exclude_self: bool = Query(True, alias='excludeSelf'),
    ctx: RequestContext = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
):
    data = await list_contacts(session, ctx, search=search, page=page, limit=limit, exclude_self=exclude_self)
    return Envelope(message='Users fetched successfully', data=data)


@router.get('/{user_id}', response_model=Envelope[UserDetailsData])
async def user_details(
    user_id: int,
    ctx: RequestContext = Depends(require_auth),
    session: AsyncSession = Depends(get_session),
):
    user = await get_user_details(session, user_id)
    return Envelope(message='User fetched successfully', data=UserDetailsData(user=user))
