"""Bearer tokens for the HTTP API: a base64url claims body and its HMAC-SHA256 signature."""
from __future__ import annotations

import base64
import hashlib
import hmac
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel, Field
from pydantic import ValidationError as PayloadError

from aegis_ics.config import SECRET_KEY, TOKEN_EXPIRE_HOURS
from aegis_ics.errors import AuthenticationError
from aegis_ics.models import Actor


class TokenClaims(BaseModel):
    sub: str = Field(min_length=1)
    email: str | None = None
    exp: float

    @classmethod
    def for_actor(cls, actor: Actor, expire_hours: float = TOKEN_EXPIRE_HOURS) -> TokenClaims:
        expires = datetime.now(timezone.utc) + timedelta(hours=expire_hours)
        return cls(sub=actor.id, email=actor.email, exp=expires.timestamp())

    @property
    def expired(self) -> bool:
        return datetime.now(timezone.utc).timestamp() > self.exp


def _signature(body: str, secret: str) -> str:
    return hmac.new(secret.encode(), body.encode(), hashlib.sha256).hexdigest()


def create_token(claims: TokenClaims, secret: str = SECRET_KEY) -> str:
    body = base64.urlsafe_b64encode(claims.model_dump_json().encode()).decode().rstrip("=")
    return f"{body}.{_signature(body, secret)}"


def token_for(actor: Actor, secret: str = SECRET_KEY, expire_hours: float = TOKEN_EXPIRE_HOURS) -> str:
    return create_token(TokenClaims.for_actor(actor, expire_hours), secret=secret)


def decode_token(token: str, secret: str = SECRET_KEY) -> TokenClaims:
    body, _, signature = token.partition(".")
    if not body or not hmac.compare_digest(signature.encode(), _signature(body, secret).encode()):
        raise AuthenticationError("Invalid token")

    try:
        raw = base64.urlsafe_b64decode(body + "=" * (-len(body) % 4))
        claims = TokenClaims.model_validate_json(raw)
    except (ValueError, PayloadError) as exc:
        raise AuthenticationError("Invalid token") from exc
    if claims.expired:
        raise AuthenticationError("Token expired")
    return claims
