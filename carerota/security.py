from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from carerota.errors import ApiError
from carerota.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)

ACTOR_ROLES: frozenset[str] = frozenset({"carer", "admin"})
REVIEWER_ROLE = "admin"


@dataclass(frozen=True, slots=True)
class Actor:
    actor_id: str
    role: str
    care_space_id: int

    @property
    def is_reviewer(self) -> bool:
        return self.role == REVIEWER_ROLE


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    if payload.get("role") not in ACTOR_ROLES:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")

    return payload


def actor_from_claims(payload: dict[str, Any]) -> Actor:
    raw_care_space = payload.get("care_space_id")
    try:
        care_space_id = int(raw_care_space)
    except (TypeError, ValueError) as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token care space is invalid.") from exc
    return Actor(actor_id=str(payload["sub"]), role=str(payload["role"]), care_space_id=care_space_id)


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    actor = actor_from_claims(decode_token(credentials.credentials))

    request.state.actor = actor.role
    request.state.actor_id = actor.actor_id
    request.state.care_space_id = actor.care_space_id
    return actor


def require_reviewer(actor: Actor = Depends(require_actor)) -> Actor:
    if not actor.is_reviewer:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
    return actor


def require_owner_or_reviewer(actor: Actor, owner_id: str) -> None:
    # carers may only withdraw what they submitted themselves
    if not actor.is_reviewer and owner_id != actor.actor_id:
        raise ApiError(status_code=403, code="FORBIDDEN", message="Insufficient permissions.")
