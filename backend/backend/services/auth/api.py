from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from app.core.errors import AuthorizationError
from app.db.session import get_db
from app.db.models.auth import User, Role, Permission, UserRole, RolePermission, UserPermission
from app.core.security import (
    hash_password,
    verify_password,
    create_access_token,
    is_allowed,
    role_names,
    require_access,
    require_user,
    Principal,
)
from services._crud import get_or_404

log = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])

RBAC_ROUTE = "/admin/rbac"


class RegisterIn(BaseModel):
    email: EmailStr
    password: str
    full_name: str | None = ""


class LoginIn(BaseModel):
    email: EmailStr
    password: str


class TokenOut(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RoleIn(BaseModel):
    name: str
    description: str | None = ""


class PermissionIn(BaseModel):
    code: str
    route_path: str
    module: str | None = "system"
    description: str | None = ""


class CodesIn(BaseModel):
    permission_codes: list[str]


class RoleNamesIn(BaseModel):
    roles: list[str]


class OverrideIn(BaseModel):
    permission_code: str
    is_allowed: bool


class CheckIn(BaseModel):
    route_path: str


DEFAULT_ROLES = [
    ("admin", "System administrator"),
    ("owner", "Business owner"),
    ("manager", "Plant manager"),
    ("sales", "Sales desk"),
    ("production", "Production floor"),
    ("purchase", "Purchasing desk"),
    ("store", "Stores and inventory"),
    ("user", "Basic user"),
]

# (code, module, route_path, description)
DEFAULT_PERMISSIONS = [
    ("sales.manage", "sales", "/sales", "Create, confirm and update sales orders"),
    ("manufacturing.manage", "manufacturing", "/manufacturing", "Create batches and advance stages"),
    ("inventory.manage", "inventory", "/inventory", "Maintain raw materials and finished goods"),
    ("purchasing.manage", "purchasing", "/purchasing", "Place and receive purchase orders"),
    ("catalog.manage", "catalog", "/catalog", "Maintain products and bills of material"),
    ("rbac.manage", "system", RBAC_ROUTE, "Manage roles and permissions"),
    ("events.manage", "system", "/admin/events", "Manage webhook subscriptions"),
]

ROLE_MAP = {
    "manager": ["sales.manage", "manufacturing.manage", "inventory.manage", "purchasing.manage", "catalog.manage"],
    "sales": ["sales.manage"],
    "production": ["manufacturing.manage"],
    "purchase": ["purchasing.manage"],
    "store": ["inventory.manage"],
    "user": [],
}


def _ensure_seed(db: Session) -> None:
    # Create default roles/permissions if missing.
    for name, desc in DEFAULT_ROLES:
        if not db.query(Role).filter(Role.name == name).first():
            db.add(Role(name=name, description=desc, is_system=True))
    db.flush()

    perm_objs = {}
    for code, module, route_path, desc in DEFAULT_PERMISSIONS:
        p = db.query(Permission).filter(Permission.code == code).first()
        if not p:
            p = Permission(code=code, module=module, route_path=route_path, description=desc)
            db.add(p)
        perm_objs[code] = p
    db.flush()

    for role_name, perm_codes in ROLE_MAP.items():
        role = db.query(Role).filter(Role.name == role_name).first()
        if not role:
            continue
        existing = {rp.permission.code for rp in role.permissions}
        for code in perm_codes:
            if code in existing:
                continue
            perm = perm_objs.get(code) or db.query(Permission).filter(Permission.code == code).first()
            if perm:
                db.add(RolePermission(role_id=role.id, permission_id=perm.id))
    db.commit()


def _role(db: Session, name: str) -> Role:
    role = db.query(Role).filter(Role.name == name).first()
    if not role:
        raise HTTPException(status_code=404, detail=f"Role {name} not found")
    return role


def _permission(db: Session, code: str) -> Permission:
    perm = db.query(Permission).filter(Permission.code == code).first()
    if not perm:
        raise HTTPException(status_code=404, detail=f"Permission {code} not found")
    return perm


def _role_out(r: Role) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "description": r.description,
        "is_system": r.is_system,
        "permissions": sorted(rp.permission.code for rp in r.permissions if rp.permission),
    }


def _perm_out(p: Permission) -> dict:
    return {"id": p.id, "code": p.code, "module": p.module, "route_path": p.route_path, "description": p.description}


@router.post("/register", response_model=TokenOut)
def register(payload: RegisterIn, db: Session = Depends(get_db)):
    # Ensure seed exists so we can assign the user role
    _ensure_seed(db)

    # Bootstrap rule: the very first user to register becomes admin.
    is_first_user = db.query(User).count() == 0

    if len(payload.password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters")

    existing = db.query(User).filter(User.email == payload.email).first()
    if existing:
        raise HTTPException(status_code=409, detail="Email already registered")

    user = User(email=payload.email, full_name=payload.full_name or "", password_hash=hash_password(payload.password))
    db.add(user)
    db.flush()

    role = db.query(Role).filter(Role.name == ("admin" if is_first_user else "user")).first()
    if role:
        db.add(UserRole(user_id=user.id, role_id=role.id))
    db.commit()
    log.info("registered %s as %s", user.email, role.name if role else "no role")

    return TokenOut(access_token=create_access_token(db, user.id))


@router.post("/login", response_model=TokenOut)
def login(payload: LoginIn, db: Session = Depends(get_db)):
    _ensure_seed(db)
    user = db.query(User).filter(User.email == payload.email).first()
    if not user or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.is_active:
        raise AuthorizationError(f"User {user.email} is inactive", code="inactive_user")
    return TokenOut(access_token=create_access_token(db, user.id))


@router.get("/me")
def me(db: Session = Depends(get_db), principal: Principal = Depends(require_user)):
    user = get_or_404(db, User, principal.user_id)
    return {"id": user.id, "email": user.email, "full_name": user.full_name, "roles": role_names(user)}


@router.post("/check-permission")
def check_permission(payload: CheckIn, db: Session = Depends(get_db), principal: Principal = Depends(require_user)):
    return {"route_path": payload.route_path, "allowed": is_allowed(db, principal.user_id, payload.route_path)}


@router.post("/seed")
def seed(db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    _ensure_seed(db)
    return {"ok": True}


# ============= ROLES & PERMISSIONS =============

@router.get("/roles")
def list_roles(db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    return [_role_out(r) for r in db.query(Role).order_by(Role.name.asc()).all()]


@router.post("/roles", status_code=201)
def create_role(payload: RoleIn, db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    name = payload.name.strip().lower()
    if not name:
        raise HTTPException(status_code=400, detail="Role name required")
    if db.query(Role).filter(Role.name == name).first():
        raise HTTPException(status_code=409, detail="Role already exists")
    r = Role(name=name, description=payload.description or "")
    db.add(r); db.commit(); db.refresh(r)
    return _role_out(r)


@router.delete("/roles/{name}")
def delete_role(name: str, db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    r = _role(db, name)
    if r.is_system:
        raise HTTPException(status_code=409, detail="System roles cannot be deleted")
    db.delete(r)
    db.commit()
    return {"ok": True}


@router.put("/roles/{name}/permissions")
def set_role_permissions(name: str, payload: CodesIn, db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    r = _role(db, name)
    wanted = {_permission(db, code).id for code in payload.permission_codes}
    for rp in list(r.permissions):
        if rp.permission_id not in wanted:
            r.permissions.remove(rp)
    have = {rp.permission_id for rp in r.permissions}
    for perm_id in wanted - have:
        r.permissions.append(RolePermission(permission_id=perm_id))
    db.commit()
    db.refresh(r)
    return _role_out(r)


@router.get("/permissions")
def list_permissions(db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    return [_perm_out(p) for p in db.query(Permission).order_by(Permission.code.asc()).all()]


@router.post("/permissions", status_code=201)
def create_permission(payload: PermissionIn, db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    if not payload.route_path.startswith("/"):
        raise HTTPException(status_code=400, detail="route_path must start with '/'")
    if db.query(Permission).filter(Permission.code == payload.code).first():
        raise HTTPException(status_code=409, detail="Permission already exists")
    p = Permission(
        code=payload.code,
        route_path=payload.route_path,
        module=payload.module or "system",
        description=payload.description or "",
    )
    db.add(p); db.commit(); db.refresh(p)
    return _perm_out(p)


# ============= USER GRANTS =============

@router.put("/users/{user_id}/roles")
def set_user_roles(user_id: str, payload: RoleNamesIn, db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    user = get_or_404(db, User, user_id)
    wanted = {_role(db, name.lower()).id for name in payload.roles}
    for ur in list(user.roles):
        if ur.role_id not in wanted:
            user.roles.remove(ur)
    have = {ur.role_id for ur in user.roles}
    for role_id in wanted - have:
        user.roles.append(UserRole(role_id=role_id))
    db.commit()
    db.refresh(user)
    return {"id": user.id, "roles": role_names(user)}


@router.get("/users/{user_id}/permissions")
def list_user_overrides(user_id: str, db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    user = get_or_404(db, User, user_id)
    return [
        {"permission_code": o.permission.code, "route_path": o.permission.route_path, "is_allowed": o.is_allowed}
        for o in user.permission_overrides
        if o.permission
    ]


@router.put("/users/{user_id}/permissions")
def set_user_override(user_id: str, payload: OverrideIn, db: Session = Depends(get_db), _=Depends(require_access(RBAC_ROUTE))):
    user = get_or_404(db, User, user_id)
    perm = _permission(db, payload.permission_code)
    override = (
        db.query(UserPermission)
        .filter(UserPermission.user_id == user.id, UserPermission.permission_id == perm.id)
        .first()
    )
    if override is None:
        override = UserPermission(user_id=user.id, permission_id=perm.id)
        db.add(override)
    override.is_allowed = payload.is_allowed
    db.commit()
    return {"permission_code": perm.code, "route_path": perm.route_path, "is_allowed": override.is_allowed}
