from datetime import datetime
from typing import List, Optional
from urllib.parse import quote

from pydantic import BaseModel

from .common import CamelModel, Pagination


def avatar_url(name: str) -> str:
    return f"https://ui-avatars.com/api/?name={quote(name)}&background=6366f1&color=ffffff&size=128"


class SignupIn(BaseModel):
    # Fields are optional so missing values get the same per-field messages as invalid ones
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None


class LoginIn(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class UserSummary(CamelModel):
    id: int
    name: str
    email: str


class UserOut(UserSummary):
    created_at: datetime


class ContactOut(UserOut):
    profile_url: str


class ProfileOut(UserSummary):
    profile_url: str


class MessageStats(CamelModel):
    total_sent: int
    total_received: int


class UserDetailsOut(ContactOut):
    message_stats: MessageStats


class UserData(CamelModel):
    user: UserOut


class LoginData(CamelModel):
    user: UserOut
    token: str


class MeData(CamelModel):
    user: ProfileOut


class ContactsData(CamelModel):
    users: List[ContactOut]
    pagination: Pagination


class UserDetailsData(CamelModel):
    user: UserDetailsOut
