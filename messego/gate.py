"""
Auth Gate
Runs an ordered list of capability checks in front of protected routes.
Each check takes the incoming request and the context built so far, and
either returns a new context to continue with or raises AuthError to stop
the pipeline. Routes receive the final RequestContext as a parameter.
"""
import os
import uuid
import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional, Sequence

from fastapi import Request

from .auth import Identity, decode_token
from .errors import AuthError

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = os.getenv('SESSION_COOKIE_NAME', 'messego')


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    token: Optional[str] = None
    identity: Optional[Identity] = None

    @property
    def user_id(self) -> int:
        return self.identity.user_id


Check = Callable[[Request, RequestContext], RequestContext]


def cookie_token(request: Request, ctx: RequestContext) -> RequestContext:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if not token:
        raise AuthError('No authentication token found')
    return replace(ctx, token=token)


def verified_identity(request: Request, ctx: RequestContext) -> RequestContext:
    identity = decode_token(ctx.token)
    return replace(ctx, identity=identity)


class AuthGate:
    def __init__(self, checks: Sequence[Check]):
        self.checks = list(checks)

    def run(self, request: Request) -> RequestContext:
        ctx = RequestContext(request_id=request.headers.get('X-Request-ID') or uuid.uuid4().hex)
        for check in self.checks:
            try:
                ctx = check(request, ctx)
            except AuthError as e:
                logger.info('auth_rejected', extra={'path': request.url.path, 'check': check.__name__, 'reason': e.message})
                raise
        if ctx.identity is None:
            raise AuthError()
        return ctx

    async def __call__(self, request: Request) -> RequestContext:
        return self.run(request)


require_auth = AuthGate([cookie_token, verified_identity])
