import re
import logging
from typing import Dict, Optional, Tuple

from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import Identity, create_access_token, hash_password, verify_password
from .errors import AuthError, ConflictError, NotFoundError, ValidationError
from .gate import RequestContext
from .models.messages import Message
from .models.users import User
from .schemas.common import Pagination
from .schemas.users import ContactOut, ContactsData, MessageStats, UserDetailsOut, avatar_url

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
NAME_RE = re.compile(r'^[a-zA-Z\s]+$')
PASSWORD_SPECIALS = '@$!%*?&'

CONTACTS_DEFAULT_LIMIT = 10
CONTACTS_MAX_LIMIT = 50


def canonical_email(email: str) -> str:
    return email.strip().lower()


def validate_name(name) -> Optional[str]:
    if not name or not isinstance(name, str):
        return 'Name is required'
    name = name.strip()
    if len(name) < 2:
        return 'Name must be at least 2 characters'
    if len(name) > 50:
        return 'Name must be less than 50 characters'
    if not NAME_RE.match(name):
        return 'Name can only contain letters and spaces'
    return None


def validate_email(email) -> Optional[str]:
    if not email or not isinstance(email, str):
        return 'Email is required'
    if not EMAIL_RE.match(canonical_email(email)):
        return 'Please enter a valid email address'
    return None


def validate_password(password) -> Optional[str]:
    if not password or not isinstance(password, str):
        return 'Password is required'
    if len(password) < 8:
        return 'Password must be at least 8 characters'
    if len(password) > 100:
        return 'Password must be less than 100 characters'
    if not any(c.islower() for c in password):
        return 'Password must contain at least one lowercase letter'
    if not any(c.isupper() for c in password):
        return 'Password must contain at least one uppercase letter'
    if not any(c.isdigit() for c in password):
        return 'Password must contain at least one number'
    if not any(c in PASSWORD_SPECIALS for c in password):
        return 'Password must contain at least one special character'
    return None


# accounts
async def create_user(session: AsyncSession, payload) -> User:
    errors: Dict[str, str] = {}
    for field, check in (('name', validate_name), ('email', validate_email), ('password', validate_password)):
        error = check(getattr(payload, field))
        if error:
            errors[field] = error
    if errors:
        raise ValidationError('Validation failed', errors=errors)

    email = canonical_email(payload.email)
    existing = await session.execute(select(User.id).where(User.email == email))
    if existing.scalar() is not None:
        raise ConflictError('Email already exists', errors={'email': 'An account with this email already exists'})

    user = User(name=payload.name.strip(), email=email, hashed_password=hash_password(payload.password))
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        # lost a race with a concurrent signup for the same email
        await session.rollback()
        raise ConflictError('Email already exists', errors={'email': 'An account with this email already exists'})
    await session.refresh(user)
    logger.info('user_registered', extra={'user_id': user.id})
    return user


async def authenticate_user(session: AsyncSession, email: Optional[str], password: Optional[str]) -> Tuple[User, str]:
    if not email or not password:
        raise ValidationError('Email and password are required')
    if not EMAIL_RE.match(canonical_email(email)):
        raise ValidationError('Please enter a valid email address')

    q = await session.execute(select(User).where(User.email == canonical_email(email)))
    user = q.scalars().first()
    # same message for unknown email and wrong password
    if not user or not verify_password(password, user.hashed_password):
        logger.info('login_failed', extra={'known_user': user is not None})
        raise AuthError('Invalid credentials')

    token = create_access_token(Identity(user_id=user.id, email=user.email, name=user.name))
    return user, token


async def get_user_by_id(session: AsyncSession, user_id: int) -> Optional[User]:
    q = await session.execute(select(User).where(User.id == user_id))
    return q.scalars().first()


# contact directory
def _escape_like(term: str) -> str:
    return term.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')


def clamp_limit(limit: Optional[int], default: int, maximum: int) -> int:
    if not limit or limit < 1:
        return default
    return min(limit, maximum)


async def list_contacts(session: AsyncSession, ctx: RequestContext, search: str = '', page: int = 1,
                        limit: Optional[int] = None, exclude_self: bool = True) -> ContactsData:
    """Users matching `search` in name or email, case-insensitive, sorted by name then email."""
    limit = clamp_limit(limit, CONTACTS_DEFAULT_LIMIT, CONTACTS_MAX_LIMIT)
    conditions = []
    if exclude_self:
        conditions.append(User.id != ctx.user_id)
    term = (search or '').strip()
    if term:
        pattern = f'%{_escape_like(term)}%'
        conditions.append(or_(User.email.ilike(pattern, escape='\\'), User.name.ilike(pattern, escape='\\')))

    q = (
        select(User)
        .where(*conditions)
        .order_by(User.name.asc(), User.email.asc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    users = (await session.execute(q)).scalars().all()
    total = (await session.execute(select(func.count(User.id)).where(*conditions))).scalar_one()

    return ContactsData(
        users=[ContactOut(id=u.id, name=u.name, email=u.email, created_at=u.created_at, profile_url=avatar_url(u.name)) for u in users],
        pagination=Pagination.build(page, limit, total),
    )


async def get_user_details(session: AsyncSession, user_id: int) -> UserDetailsOut:
    user = await get_user_by_id(session, user_id)
    if not user:
        raise NotFoundError('User not found')

    live = Message.deleted_at.is_(None)
    sent = (await session.execute(select(func.count(Message.id)).where(Message.from_id == user_id, live))).scalar_one()
    received = (await session.execute(select(func.count(Message.id)).where(Message.to_id == user_id, live))).scalar_one()

    return UserDetailsOut(
        id=user.id,
        name=user.name,
        email=user.email,
        created_at=user.created_at,
        profile_url=avatar_url(user.name),
        message_stats=MessageStats(total_sent=sent, total_received=received),
    )
