"""Authentication helpers and FastAPI security dependency.

Accounts live with the external identity provider. It signs short-lived
session tokens whose claims carry the user id (`sub`), the subscribed
plan (`plan`) and any feature flags (`features`). This module verifies
those tokens and exposes the `get_current_user` dependency.

Token verification raises HTTPExceptions on failure so it can be used
directly inside route dependencies.
"""

from dataclasses import dataclass, field
from typing import FrozenSet, Optional

from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt

from .config import settings

bearer_scheme = HTTPBearer()


@dataclass(frozen=True)
class CurrentUser:
    """The authenticated caller as described by the identity provider."""
    id: str
    plan: Optional[str] = None
    features: FrozenSet[str] = field(default_factory=frozenset)

    def has_plan(self, plan: str) -> bool:
        return self.plan == plan

    def has_feature(self, feature: str) -> bool:
        return feature in self.features


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    options = {"verify_aud": bool(settings.JWT_AUDIENCE)}
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=[settings.JWT_ALGORITHM],
            audience=settings.JWT_AUDIENCE or None,
            options=options,
        )
        return payload
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.PyJWTError:
        raise HTTPException(status_code=401, detail='invalid token')


def user_from_claims(payload: dict) -> CurrentUser:
    """Build a `CurrentUser` from verified token claims."""
    user_id = payload.get('sub')
    if not user_id:
        raise HTTPException(status_code=401, detail='invalid token payload')
    features = payload.get('features') or []
    if isinstance(features, str):
        features = [f.strip() for f in features.split(',') if f.strip()]
    return CurrentUser(id=str(user_id), plan=payload.get('plan') or None, features=frozenset(features))


def get_current_user(credentials: HTTPAuthorizationCredentials = Security(bearer_scheme)) -> CurrentUser:
    """FastAPI dependency that returns the authenticated user.

    Raises an HTTPException(401) for any authentication issue.
    """
    payload = decode_token(credentials.credentials)
    return user_from_claims(payload)
