"""Caller identity: anonymous, member, or administrator.

Tokens are HS256 JWTs signed with ACCESS_TOKEN_SECRET and carrying ``sub``
and ``role``. Issuing them belongs to the member/admin login service;
``issue_token`` exists for tooling and tests.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header

from syntax_events.context import AppContext, get_context
from syntax_events.errors import ForbiddenError, UnauthorizedError

ALGORITHM = "HS256"
ROLES = ("admin", "member")


@dataclass(frozen=True)
class Caller:
    subject: Optional[str] = None
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


ANONYMOUS = Caller()


def issue_token(secret: str, subject: str, role: str, ttl: timedelta = timedelta(hours=1)) -> str:
    now = datetime.now(timezone.utc)
    payload = {"sub": subject, "role": role, "iat": now, "exp": now + ttl}
    return jwt.encode(payload, secret, algorithm=ALGORITHM)


def decode_token(secret: str, token: str) -> Caller:
    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM])
    except jwt.PyJWTError as exc:
        raise UnauthorizedError("Invalid or expired access token") from exc
    role = claims.get("role")
    if role not in ROLES:
        raise UnauthorizedError("Access token carries no recognised role")
    return Caller(subject=claims.get("sub"), role=role)


def get_caller(
    authorization: Optional[str] = Header(None),
    ctx: AppContext = Depends(get_context),
) -> Caller:
    """Anonymous when no bearer token is sent; 401 when one is sent but invalid."""
    if not authorization:
        return ANONYMOUS
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedError("Authorization header must be 'Bearer <token>'")
    return decode_token(ctx.settings.access_token_secret, token.strip())


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.role is None:
        raise UnauthorizedError()
    if not caller.is_admin:
        raise ForbiddenError()
    return caller
