from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from app.db.session import get_db
from app.db.models.auth import User, UserPermission

log = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_TTL_MIN = int(os.getenv("JWT_TTL_MIN", "480"))  # one shift

IAM_ISSUER = os.getenv("IAM_ISSUER", "factory-erp")
IAM_AUDIENCE = os.getenv("IAM_AUDIENCE", "factory-erp-api")

# Roles that pass every route check regardless of granted permissions
BYPASS_ROLES = {"admin", "owner"}


@dataclass
class Principal:
    user_id: str | None = None
    username: str = "anonymous"
    roles: list[str] = field(default_factory=list)

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # Unknown or malformed hash format
        return False


def _normalize_path(path: str) -> str:
    path = "/" + (path or "").strip().strip("/")
    return path


def path_covers(granted: str, route_path: str) -> bool:
    """True when `granted` equals `route_path` or is a path prefix of it."""
    granted = _normalize_path(granted)
    route_path = _normalize_path(route_path)
    if granted == "/":
        return True
    return route_path == granted or route_path.startswith(granted + "/")


def role_names(user: User) -> list[str]:
    return sorted({ur.role.name for ur in user.roles if ur.role})


def is_allowed(db: Session, user_id: str, route_path: str) -> bool:
    """RBAC decision for one user and one route.

    admin/owner roles bypass. Otherwise some permission covering the route must
    be granted by a role or by a per-user allow override, and not revoked by a
    per-user deny override.
    """
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        return False

    if any(name.lower() in BYPASS_ROLES for name in role_names(user)):
        return True

    overrides = {
        o.permission_id: o.is_allowed
        for o in db.query(UserPermission).filter(UserPermission.user_id == user_id).all()
    }

    granted = {}
    for ur in user.roles:
        if not ur.role:
            continue
        for rp in ur.role.permissions:
            if rp.permission:
                granted[rp.permission.id] = rp.permission
    for o in user.permission_overrides:
        if o.is_allowed and o.permission:
            granted[o.permission.id] = o.permission

    for perm_id, perm in granted.items():
        if overrides.get(perm_id) is False:
            continue
        if path_covers(perm.route_path, route_path):
            return True
    return False


def create_access_token(db: Session, user_id: str) -> str:
    user = db.query(User).filter(User.id == user_id).first()
    now = datetime.now(timezone.utc)
    payload = {
        "iss": IAM_ISSUER,
        "aud": IAM_AUDIENCE,
        "sub": user_id,
        "email": user.email if user else "unknown",
        "roles": role_names(user) if user else [],
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=JWT_TTL_MIN)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def get_principal(
    creds: HTTPAuthorizationCredentials | None = Depends(bearer),
    db: Session = Depends(get_db),
) -> Principal:
    if not creds or not creds.credentials:
        return Principal()

    try:
        payload = jwt.decode(
            creds.credentials,
            JWT_SECRET,
            algorithms=[JWT_ALG],
            audience=IAM_AUDIENCE,
            issuer=IAM_ISSUER,
        )
    except JWTError:
        return Principal()

    user_id = payload.get("sub")
    # Tokens outlive role changes; re-read roles and the active flag
    user = db.query(User).filter(User.id == user_id).first()
    if not user or not user.is_active:
        return Principal()
    return Principal(user_id=user.id, username=user.email, roles=role_names(user))


def require_user(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_authenticated:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return principal


def require_access(route_path: str) -> Callable:
    """Dependency factory guarding a route prefix with the RBAC gate."""

    def _dep(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)) -> Principal:
        if not principal.is_authenticated:
            raise HTTPException(status_code=401, detail="Not authenticated")
        if not is_allowed(db, principal.user_id, route_path):
            log.info("access denied user=%s route=%s", principal.username, route_path)
            raise HTTPException(status_code=403, detail={"error": "forbidden", "route_path": route_path})
        return principal

    return _dep
