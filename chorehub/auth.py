import secrets
from typing import Optional

from fastapi import Depends, HTTPException, Request
from passlib.context import CryptContext
from sqlmodel import Session, select

from .db import get_session
from .models import HouseholdMember, MemberRole, User

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


def get_current_user(
    request: Request, session: Session = Depends(get_session)
) -> Optional[User]:
    user_id = request.session.get("user_id")
    if not user_id:
        return None
    return session.get(User, user_id)


def require_user(user: Optional[User] = Depends(get_current_user)) -> User:
    if not user:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def login_user(request: Request, user: User):
    request.session["user_id"] = user.id
    request.session["csrf_token"] = secrets.token_hex(16)


def logout_user(request: Request):
    request.session.clear()


def get_membership(session: Session, household_id: int, user_id: int) -> Optional[HouseholdMember]:
    return session.exec(
        select(HouseholdMember).where(
            HouseholdMember.household_id == household_id,
            HouseholdMember.user_id == user_id,
        )
    ).first()


def has_role(session: Session, household_id: int, user_id: int, *roles: MemberRole) -> bool:
    membership = get_membership(session, household_id, user_id)
    return membership is not None and membership.role in roles


def require_membership(
    session: Session, household_id: int, user: User, *roles: MemberRole
) -> HouseholdMember:
    membership = get_membership(session, household_id, user.id)
    if not membership:
        raise HTTPException(status_code=403, detail="Not a member of this household")
    if roles and membership.role not in roles:
        raise HTTPException(status_code=403, detail="Insufficient household role")
    return membership
