"""
Request principal resolution.

Staff authenticate with the hosting platform, which issues an HS256 JWT whose
``sub`` is the principal id. We verify it and take one role snapshot per
request; the policy engine never looks roles up itself.
"""

from __future__ import annotations

import logging

import jwt
from fastapi import Depends, Header
from sqlalchemy.orm import Session

from clinic_intake.config import settings
from clinic_intake.models.database import get_db
from clinic_intake.services.errors import AuthenticationFailed
from clinic_intake.services.policy import ANONYMOUS, Principal, principal_for
from clinic_intake.services.roles import load_role

logger = logging.getLogger(__name__)


def decode_token(token: str) -> dict:
    return jwt.decode(
        token,
        settings.AUTH_JWT_SECRET,
        algorithms=["HS256"],
        audience=settings.AUTH_JWT_AUDIENCE,
        options={"require": ["sub", "exp"]},
    )


def get_principal(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> Principal:
    if not authorization:
        return ANONYMOUS
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationFailed("Expected a bearer token")
    try:
        claims = decode_token(token)
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationFailed("Token has expired") from exc
    except jwt.InvalidTokenError as exc:
        logger.warning("Rejected bearer token: %s", exc)
        raise AuthenticationFailed() from exc

    principal_id = str(claims["sub"])
    return principal_for(principal_id, load_role(db, principal_id))
