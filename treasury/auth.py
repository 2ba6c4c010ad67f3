import secrets
from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status

from treasury.config import settings


ACTOR_HEADER = "x-actor"


class Role(str, Enum):
    ADMIN = "ADMIN"
    SCHEDULER = "SCHEDULER"
    WEBHOOK = "WEBHOOK"


@dataclass
class Principal:
    name: str
    role: Role


def _bearer_token(request: Request) -> str | None:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _key_matches(candidate: str, configured: str | None) -> bool:
    if not configured:
        return False
    return secrets.compare_digest(candidate.encode("utf-8"), configured.encode("utf-8"))


def resolve_role(token: str | None) -> Role | None:
    if not token:
        return None
    keyed_roles = (
        (Role.ADMIN, settings.admin_api_key),
        (Role.SCHEDULER, settings.scheduler_api_key),
        (Role.WEBHOOK, settings.inbound_webhook_key),
    )
    for role, key in keyed_roles:
        if _key_matches(token, key):
            return role
    return None


def get_current_principal(request: Request) -> Principal:
    role = resolve_role(_bearer_token(request))
    if role is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED)
    name = (request.headers.get(ACTOR_HEADER) or "").strip() or role.value.lower()
    return Principal(name=name, role=role)


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep
