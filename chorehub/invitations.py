"""Household invitations.

An invitation is a token-keyed claimable resource whose subject is the invited
email address. Accepting it claims the resource and adds the membership in the
same transaction.
"""

import logging
import re
from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Session, select

from .auth import get_membership, has_role
from .claims import (
    ClaimEngine,
    ClaimOutcome,
    ClaimPolicy,
    ConflictReason,
    ResourceSnapshot,
)
from .config import settings
from .db import utcnow
from .models import (
    ClaimableResource,
    ClaimState,
    Household,
    HouseholdMember,
    MemberRole,
    User,
)

_LOGGER = logging.getLogger(__name__)

KIND = "invitation"
EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
INVITABLE_ROLES = (MemberRole.admin, MemberRole.parent)


class InvitationRejected(ValueError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def _group_key(household_id: int, scope_id: Optional[int], subject_key: str) -> str:
    return f"{KIND}:{household_id}:{subject_key}"


def _is_eligible(session: Session, resource: ClaimableResource, actor: User) -> bool:
    return normalize_email(actor.email) == resource.subject_key


def _can_cancel(session: Session, resource: ClaimableResource, actor: User) -> bool:
    if resource.owner_user_id == actor.id:
        return True
    return has_role(session, resource.household_id, actor.id, MemberRole.admin)


def _claim_guard(
    session: Session, resource: ClaimableResource, actor: User
) -> Optional[ConflictReason]:
    if get_membership(session, resource.household_id, actor.id):
        return ConflictReason.already_member
    return None


def _add_member(session: Session, resource: ClaimableResource, actor: User):
    role = MemberRole(resource.payload.get("role", MemberRole.parent.value))
    session.add(HouseholdMember(household_id=resource.household_id, user_id=actor.id, role=role))
    session.flush()
    _LOGGER.info("user %s joined household %s as %s", actor.id, resource.household_id, role.value)


INVITATION_POLICY = ClaimPolicy(
    kind=KIND,
    group_key=_group_key,
    is_eligible=_is_eligible,
    can_cancel=_can_cancel,
    uses_token=True,
    claim_guard=_claim_guard,
    on_claimed=_add_member,
)


def create_invitation(
    engine: ClaimEngine,
    household_id: int,
    inviter: User,
    email: str,
    role: str = MemberRole.parent.value,
    ttl: Optional[timedelta] = None,
) -> ClaimOutcome:
    email = normalize_email(email)
    if not EMAIL_RE.match(email):
        raise InvitationRejected("Valid email address is required")
    try:
        member_role = MemberRole(role)
    except ValueError:
        member_role = None
    if member_role not in INVITABLE_ROLES:
        raise InvitationRejected('Role must be "admin" or "parent"')
    ttl = ttl or timedelta(days=settings.invitation_ttl_days)

    def work(session: Session, now: datetime) -> ClaimOutcome:
        if session.get(Household, household_id) is None:
            raise InvitationRejected("Household not found", status_code=404)
        already_member = session.exec(
            select(HouseholdMember.id)
            .join(User, User.id == HouseholdMember.user_id)
            .where(HouseholdMember.household_id == household_id, User.email == email)
        ).first()
        if already_member:
            raise InvitationRejected("User is already a household member", status_code=409)
        pending = session.exec(
            select(ClaimableResource.id).where(
                ClaimableResource.kind == KIND,
                ClaimableResource.group_key == _group_key(household_id, None, email),
                ClaimableResource.state == ClaimState.open,
                ClaimableResource.expires_at > now,
            )
        ).first()
        if pending:
            raise InvitationRejected(
                "Pending invitation already exists for this email", status_code=409
            )
        return engine.open_in(
            session,
            now,
            INVITATION_POLICY,
            household_id,
            email,
            inviter.id,
            ttl,
            payload={"role": member_role.value},
        )

    return engine.atomic("create_invitation", work)


def accept_invitation(engine: ClaimEngine, token: str, user: User) -> ClaimOutcome:
    return engine.claim(INVITATION_POLICY, token, user)


def decline_invitation(engine: ClaimEngine, token: str, user: User) -> ClaimOutcome:
    return engine.release(INVITATION_POLICY, token, user)


def cancel_invitation(
    engine: ClaimEngine, household_id: int, invitation_id: int, user: User
) -> ClaimOutcome:
    snapshot = engine.inspect(invitation_id, INVITATION_POLICY)
    if snapshot is None or snapshot.household_id != household_id:
        return ClaimOutcome.conflict(ConflictReason.not_found)
    return engine.cancel(INVITATION_POLICY, invitation_id, user)


def list_sent(
    session: Session,
    household_id: int,
    status: Optional[ClaimState] = None,
    now: Optional[datetime] = None,
) -> list[ResourceSnapshot]:
    now = now or utcnow()
    rows = session.exec(
        select(ClaimableResource)
        .where(ClaimableResource.kind == KIND, ClaimableResource.household_id == household_id)
        .order_by(ClaimableResource.created_at.desc(), ClaimableResource.id.desc())
    ).all()
    snapshots = [ResourceSnapshot.from_row(row, now) for row in rows]
    if status is not None:
        snapshots = [snapshot for snapshot in snapshots if snapshot.state == status]
    return snapshots


def list_received(
    session: Session, email: str, now: Optional[datetime] = None
) -> list[tuple[ResourceSnapshot, Household]]:
    """Live invitations addressed to ``email``, newest first."""
    now = now or utcnow()
    rows = session.exec(
        select(ClaimableResource, Household)
        .join(Household, Household.id == ClaimableResource.household_id)
        .where(
            ClaimableResource.kind == KIND,
            ClaimableResource.subject_key == normalize_email(email),
            ClaimableResource.state == ClaimState.open,
            ClaimableResource.expires_at > now,
        )
        .order_by(ClaimableResource.created_at.desc(), ClaimableResource.id.desc())
    ).all()
    return [(ResourceSnapshot.from_row(row, now), household) for row, household in rows]
