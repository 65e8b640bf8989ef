import os

from fastapi import APIRouter, Depends, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import ACCESS_TOKEN_EXPIRE_DAYS
from ..core import LOGINS
from ..crud import authenticate_user, create_user
from ..errors import AuthError
from ..gate import SESSION_COOKIE_NAME, RequestContext, require_auth
from ..models import get_session
from ..schemas.common import Envelope
from ..schemas.users import LoginData, LoginIn, MeData, ProfileOut, SignupIn, UserData, UserOut, avatar_url

router = APIRouter()

COOKIE_SECURE = os.getenv('COOKIE_SECURE', 'false').lower() in ('1', 'true', 'yes')
COOKIE_MAX_AGE = 60 * 60 * 24 * ACCESS_TOKEN_EXPIRE_DAYS


@router.post('/signup', response_model=Envelope[UserData], status_code=201)
async def signup(payload: SignupIn, session: AsyncSession = Depends(get_session)):
    user = await create_user(session, payload)
    return Envelope(message='Account created successfully', data=UserData(user=UserOut.model_validate(user)))


@router.post('/login', response_model=Envelope[LoginData])
async def login(payload: LoginIn, response: Response, session: AsyncSession = Depends(get_session)):
    try:
        user, token = await authenticate_user(session, payload.email, payload.password)
    except AuthError:
        LOGINS.labels(result='failure').inc()
        raise
    LOGINS.labels(result='success').inc()

    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=COOKIE_MAX_AGE,
        path='/',
        httponly=True,
        secure=COOKIE_SECURE,
        samesite='lax',
    )
    return Envelope(message='Login successful', data=LoginData(user=UserOut.model_validate(user), token=token))


@router.post('/logout', response_model=Envelope[dict])
async def logout(response: Response):
    # Clears the client cookie only; an already issued token stays valid until it expires.
    response.set_cookie(
        SESSION_COOKIE_NAME,
        '',
        max_age=0,
        path='/',
        httponly=True,
        secure=COOKIE_SECURE,
        samesite='lax',
    )
    return Envelope(message='Logged out successfully', data={})


@router.get('/me', response_model=Envelope[MeData])
async def me(ctx: RequestContext = Depends(require_auth)):
    identity = ctx.identity
    user = ProfileOut(id=identity.user_id, email=identity.email, name=identity.name, profile_url=avatar_url(identity.name))
    return Envelope(message='Current user', data=MeData(user=user))
