import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database

from ..database import clean, create_document, get_db, now, oid
from ..errors import AuthenticationError, AuthorizationError, UserNotFoundError, ValidationError
from ..schemas import User
from ..security import (
    create_access_token,
    get_current_user,
    get_password_hash,
    public_user,
    require_admin,
    require_self_or_admin,
    verify_password,
)
from ..settings import settings

logger = logging.getLogger("iqac.routes.auth")

router = APIRouter()

ROLES = ("admin", "user", "viewer")
SUBROLES = ("initiator", "reviewer", "both", "none")


class RegisterRequest(BaseModel):
    username: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    role: Literal["user", "viewer"] = "user"
    department: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    department: Optional[str] = None
    courseCode: Optional[str] = None
    courseName: Optional[str] = None


class RoleUpdate(BaseModel):
    role: str


class UserUpdate(BaseModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    role: Optional[str] = None
    subrole: Optional[str] = None
    department: Optional[str] = None
    courseCode: Optional[str] = None
    courseName: Optional[str] = None
    courseIds: Optional[List[str]] = None
    isActive: Optional[bool] = None


class CreateAdminRequest(BaseModel):
    username: str = "admin"
    email: EmailStr
    password: str = Field(..., min_length=1)
    firstName: Optional[str] = "Admin"
    lastName: Optional[str] = None


def user_out(user: Dict[str, Any]) -> Dict[str, Any]:
    return clean(public_user(user))


def _load_user(db: Database, user_id: str) -> Dict[str, Any]:
    user = db["user"].find_one({"_id": oid(user_id)})
    if not user:
        raise UserNotFoundError(user_id)
    return user


def _ensure_unique(db: Database, username: Optional[str], email: Optional[str],
                   exclude_id: Any = None) -> None:
    ors = []
    if username:
        ors.append({"username": username})
    if email:
        ors.append({"email": email})
    if not ors:
        return
    query: Dict[str, Any] = {"$or": ors}
    if exclude_id is not None:
        query["_id"] = {"$ne": exclude_id}
    if db["user"].find_one(query):
        raise ValidationError("User with this email or username already exists")


@router.post("/register", status_code=status.HTTP_201_CREATED)
def register(payload: RegisterRequest, db: Database = Depends(get_db)):
    _ensure_unique(db, payload.username, payload.email)
    data = User(
        username=payload.username,
        email=payload.email,
        password=get_password_hash(payload.password),
        firstName=payload.firstName,
        lastName=payload.lastName,
        role=payload.role,
        department=payload.department,
        isPasswordSet=True,
    ).model_dump()
    user_id = create_document("user", data)
    user = db["user"].find_one({"_id": oid(user_id)})
    logger.info(f"Registered user {payload.email} ({payload.role})")
    return {
        "message": "User registered successfully",
        "token": create_access_token({"sub": user_id}),
        "user": user_out(user),
    }


@router.post("/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email})
    if not user or not verify_password(payload.password, user.get("password") or ""):
        logger.warning(f"Failed login for {payload.email}")
        raise AuthenticationError("Invalid credentials")
    if user.get("isActive") is False:
        logger.warning(f"Login attempt on deactivated account {payload.email}")
        raise AuthenticationError("Account is deactivated")

    stamp = now()
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"lastLogin": stamp}})
    user["lastLogin"] = stamp
    return {
        "message": "Login successful",
        "token": create_access_token({"sub": str(user["_id"])}),
        "user": user_out(user),
    }


@router.get("/verify")
def verify(current_user: Dict[str, Any] = Depends(get_current_user)):
    return {"valid": True, "user": clean(current_user)}


@router.get("/profile/{user_id}")
def get_profile(user_id: str, current_user: Dict[str, Any] = Depends(get_current_user),
                db: Database = Depends(get_db)):
    require_self_or_admin(current_user, user_id)
    return user_out(_load_user(db, user_id))


@router.put("/profile/{user_id}")
def update_profile(user_id: str, payload: ProfileUpdate,
                   current_user: Dict[str, Any] = Depends(get_current_user),
                   db: Database = Depends(get_db)):
    require_self_or_admin(current_user, user_id)
    user = _load_user(db, user_id)
    updates = payload.model_dump(exclude_unset=True)
    if updates:
        updates["updatedAt"] = now()
        db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
    return {"message": "Profile updated successfully", "user": user_out(_load_user(db, user_id))}


@router.get("/users")
def list_users(role: Optional[str] = None, subrole: Optional[str] = None,
               _: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    q: Dict[str, Any] = {}
    if role:
        q["role"] = role
    if subrole:
        q["subrole"] = subrole
    users = db["user"].find(q).sort("createdAt", -1)
    return [user_out(u) for u in users]


@router.put("/users/{user_id}/role")
def update_role(user_id: str, payload: RoleUpdate,
                admin: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    if payload.role not in ROLES:
        raise ValidationError("Invalid role", details={"role": payload.role, "allowed": list(ROLES)})
    user = _load_user(db, user_id)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"role": payload.role, "updatedAt": now()}})
    logger.info(f"{admin.get('email')} changed role of {user.get('email')} to {payload.role}")
    return {"message": "User role updated successfully", "user": user_out(_load_user(db, user_id))}


@router.patch("/users/{user_id}")
def update_user(user_id: str, payload: UserUpdate,
                _: Dict[str, Any] = Depends(require_admin), db: Database = Depends(get_db)):
    user = _load_user(db, user_id)
    updates = payload.model_dump(exclude_unset=True)
    if "role" in updates and updates["role"] not in ROLES:
        raise ValidationError("Invalid role", details={"role": updates["role"]})
    if "subrole" in updates and updates["subrole"] not in SUBROLES:
        raise ValidationError("Invalid subrole", details={"subrole": updates["subrole"]})
    _ensure_unique(db, updates.get("username"), updates.get("email"), exclude_id=user["_id"])
    if updates:
        updates["updatedAt"] = now()
        db["user"].update_one({"_id": user["_id"]}, {"$set": updates})
    return {"message": "User updated successfully", "user": user_out(_load_user(db, user_id))}


@router.post("/create-admin", status_code=status.HTTP_201_CREATED)
def create_admin(payload: CreateAdminRequest, db: Database = Depends(get_db)):
    if not settings.ALLOW_ADMIN_BOOTSTRAP:
        raise AuthorizationError("Admin bootstrap is disabled")
    _ensure_unique(db, payload.username, payload.email)
    data = User(
        username=payload.username,
        email=payload.email,
        password=get_password_hash(payload.password),
        firstName=payload.firstName,
        lastName=payload.lastName,
        role="admin",
        isPasswordSet=True,
    ).model_dump()
    user_id = create_document("user", data)
    logger.warning(f"Admin account {payload.email} created through bootstrap endpoint")
    return {"message": "Admin user created successfully", "user": user_out(_load_user(db, user_id))}
