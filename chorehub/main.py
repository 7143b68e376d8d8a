import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session, select
from starlette.middleware.sessions import SessionMiddleware

from . import invitations, single_tasks
from .auth import (
    get_membership,
    hash_password,
    login_user,
    logout_user,
    require_membership,
    require_user,
    verify_password,
)
from .claims import ClaimEngine, ClaimOutcome, ConflictReason, ResourceSnapshot, StoreUnavailable
from .config import configure_logging, settings
from .db import get_session, init_db
from .models import ClaimState, Household, HouseholdMember, MemberRole, Task, User

_LOGGER = logging.getLogger(__name__)

claim_engine = ClaimEngine()


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_logging()
    init_db()
    claim_engine.expire_sweep()
    yield


app = FastAPI(title="Household chore board", lifespan=lifespan)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    session_cookie="choresession",
)

CONFLICT_STATUS = {
    ConflictReason.not_found: 404,
    ConflictReason.not_eligible: 403,
    ConflictReason.forbidden: 403,
    ConflictReason.already_member: 409,
    ConflictReason.already_claimed_by_other: 409,
    ConflictReason.already_terminal: 400,
    ConflictReason.expired: 400,
    ConflictReason.invalid_subject: 400,
}

CONFLICT_MESSAGES = {
    ConflictReason.not_found: "Not found",
    ConflictReason.not_eligible: "You are not eligible for this offer",
    ConflictReason.forbidden: "Only the creator or an admin can cancel this offer",
    ConflictReason.already_member: "You are already a member of this household",
    ConflictReason.already_claimed_by_other: "Already accepted by someone else",
    ConflictReason.already_terminal: "This offer is no longer open",
    ConflictReason.expired: "This offer has expired",
    ConflictReason.invalid_subject: "Invalid offer",
}

PARENT_ROLES = (MemberRole.admin, MemberRole.parent)


@app.exception_handler(StoreUnavailable)
async def store_unavailable_handler(_: Request, exc: StoreUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def require_success(outcome: ClaimOutcome) -> ResourceSnapshot:
    if outcome.ok:
        return outcome.resource
    detail = {"reason": outcome.reason.value, "message": CONFLICT_MESSAGES[outcome.reason]}
    if outcome.state is not None:
        detail["state"] = outcome.state.value
    raise HTTPException(status_code=CONFLICT_STATUS[outcome.reason], detail=detail)


def as_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def user_view(user: User) -> dict:
    return {"id": user.id, "email": user.email, "display_name": user.display_name}


def invitation_view(snapshot: ResourceSnapshot, include_token: bool = False) -> dict:
    data = {
        "id": snapshot.id,
        "household_id": snapshot.household_id,
        "email": snapshot.subject_key,
        "role": snapshot.payload.get("role"),
        "status": snapshot.state.value,
        "invited_by": snapshot.owner_user_id,
        "expires_at": snapshot.expires_at.isoformat(),
        "accepted_at": snapshot.claimed_at.isoformat() if snapshot.claimed_at else None,
        "created_at": snapshot.created_at.isoformat(),
    }
    if include_token:
        data["token"] = snapshot.token
    return data


def offer_view(snapshot: ResourceSnapshot) -> dict:
    return {
        "id": snapshot.id,
        "task_id": snapshot.scope_id,
        "candidate_id": int(snapshot.subject_key),
        "status": snapshot.state.value,
        "expires_at": snapshot.expires_at.isoformat(),
        "claimed_at": snapshot.claimed_at.isoformat() if snapshot.claimed_at else None,
        "released_at": snapshot.released_at.isoformat() if snapshot.released_at else None,
    }


def task_view(task: Task) -> dict:
    return {
        "id": task.id,
        "household_id": task.household_id,
        "title": task.title,
        "description": task.description,
        "points": task.points,
        "deadline": task.deadline.isoformat() if task.deadline else None,
        "status": task.status.value,
        "assignee_user_id": task.assignee_user_id,
    }


def summary_view(summary: single_tasks.TaskSummary) -> dict:
    return {
        "id": summary.id,
        "household_id": summary.household_id,
        "title": summary.title,
        "description": summary.description,
        "points": summary.points,
        "deadline": summary.deadline.isoformat() if summary.deadline else None,
        "candidate_count": summary.candidate_count,
        "decline_count": summary.decline_count,
        "days_until_deadline": summary.days_until_deadline,
    }


def create_household(session: Session, name: str, owner: User) -> Household:
    household = Household(name=name)
    session.add(household)
    session.commit()
    session.refresh(household)
    session.add(HouseholdMember(household_id=household.id, user_id=owner.id, role=MemberRole.admin))
    session.commit()
    return household


# Accounts


@app.post("/register", status_code=201)
async def register(
    request: Request,
    display_name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    household_name: Optional[str] = Form(None),
    session: Session = Depends(get_session),
):
    email = invitations.normalize_email(email)
    if not invitations.EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail="Valid email address is required")
    if session.exec(select(User).where(User.email == email)).first():
        raise HTTPException(status_code=409, detail="User already exists")
    user = User(email=email, display_name=display_name, hashed_password=hash_password(password))
    session.add(user)
    session.commit()
    session.refresh(user)
    household = None
    if household_name:
        household = create_household(session, household_name, user)
    login_user(request, user)
    return {
        "user": user_view(user),
        "household": {"id": household.id, "name": household.name} if household else None,
    }


@app.post("/login")
async def login(
    request: Request,
    email: str = Form(...),
    password: str = Form(...),
    session: Session = Depends(get_session),
):
    user = session.exec(
        select(User).where(User.email == invitations.normalize_email(email))
    ).first()
    if not user or not verify_password(password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    login_user(request, user)
    return {"user": user_view(user)}


@app.post("/logout", status_code=204)
def logout(request: Request):
    logout_user(request)
    return Response(status_code=204)


@app.get("/me")
def me(session: Session = Depends(get_session), user: User = Depends(require_user)):
    rows = session.exec(
        select(HouseholdMember, Household)
        .join(Household, Household.id == HouseholdMember.household_id)
        .where(HouseholdMember.user_id == user.id)
    ).all()
    return {
        "user": user_view(user),
        "households": [
            {"id": household.id, "name": household.name, "role": member.role.value}
            for member, household in rows
        ],
    }


# Households


@app.post("/households", status_code=201)
async def add_household(
    name: str = Form(...),
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    if not name.strip():
        raise HTTPException(status_code=400, detail="Household name required")
    household = create_household(session, name.strip(), user)
    return {"id": household.id, "name": household.name}


@app.get("/households/{household_id}/members")
def list_members(
    household_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user)
    rows = session.exec(
        select(HouseholdMember, User)
        .join(User, User.id == HouseholdMember.user_id)
        .where(HouseholdMember.household_id == household_id)
        .order_by(HouseholdMember.joined_at)
    ).all()
    return {"members": [{**user_view(member_user), "role": member.role.value} for member, member_user in rows]}


@app.post("/households/{household_id}/children", status_code=201)
async def add_child(
    household_id: int,
    display_name: str = Form(...),
    email: str = Form(...),
    password: str = Form(...),
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user, *PARENT_ROLES)
    email = invitations.normalize_email(email)
    if session.exec(select(User).where(User.email == email)).first():
        raise HTTPException(status_code=409, detail="User already exists")
    child = User(email=email, display_name=display_name, hashed_password=hash_password(password))
    session.add(child)
    session.commit()
    session.refresh(child)
    session.add(HouseholdMember(household_id=household_id, user_id=child.id, role=MemberRole.child))
    session.commit()
    return {**user_view(child), "role": MemberRole.child.value}


# Invitations


@app.post("/households/{household_id}/invitations", status_code=201)
async def send_invitation(
    household_id: int,
    email: str = Form(...),
    role: str = Form(MemberRole.parent.value),
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user, *PARENT_ROLES)
    try:
        outcome = invitations.create_invitation(claim_engine, household_id, user, email, role)
    except invitations.InvitationRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    return invitation_view(require_success(outcome), include_token=True)


@app.get("/households/{household_id}/invitations")
def list_sent_invitations(
    household_id: int,
    status: Optional[ClaimState] = None,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user)
    sent = invitations.list_sent(session, household_id, status, claim_engine.clock())
    return {"invitations": [invitation_view(snapshot) for snapshot in sent]}


@app.delete("/households/{household_id}/invitations/{invitation_id}", status_code=204)
def cancel_invitation(
    household_id: int,
    invitation_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user)
    require_success(invitations.cancel_invitation(claim_engine, household_id, invitation_id, user))
    return Response(status_code=204)


@app.get("/users/me/invitations")
def list_received_invitations(
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    received = invitations.list_received(session, user.email, claim_engine.clock())
    return {
        "invitations": [
            {**invitation_view(snapshot, include_token=True), "household_name": household.name}
            for snapshot, household in received
        ]
    }


@app.get("/invitations/{token}")
def inspect_invitation(
    token: str,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    snapshot = claim_engine.inspect(token, invitations.INVITATION_POLICY)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Invitation not found")
    addressed = snapshot.subject_key == invitations.normalize_email(user.email)
    if not addressed and not get_membership(session, snapshot.household_id, user.id):
        raise HTTPException(status_code=404, detail="Invitation not found")
    return invitation_view(snapshot)


@app.post("/invitations/{token}/accept")
def accept_invitation(
    token: str,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    snapshot = require_success(invitations.accept_invitation(claim_engine, token, user))
    household = session.get(Household, snapshot.household_id)
    return {
        "household": {
            "id": household.id,
            "name": household.name,
            "role": snapshot.payload.get("role"),
        }
    }


@app.post("/invitations/{token}/decline", status_code=204)
def decline_invitation(token: str, user: User = Depends(require_user)):
    require_success(invitations.decline_invitation(claim_engine, token, user))
    return Response(status_code=204)


# Single tasks


@app.post("/households/{household_id}/single-tasks", status_code=201)
async def create_single_task(
    household_id: int,
    title: str = Form(...),
    candidate_ids: list[int] = Form(...),
    points: int = Form(0),
    description: Optional[str] = Form(None),
    deadline: Optional[datetime] = Form(None),
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user, *PARENT_ROLES)
    try:
        task_id, offers = single_tasks.create_single_task(
            claim_engine,
            household_id,
            user,
            title,
            candidate_ids,
            points=points,
            description=description,
            deadline=as_utc_naive(deadline),
        )
    except single_tasks.TaskRejected as exc:
        raise HTTPException(status_code=exc.status_code, detail=str(exc))
    task = session.get(Task, task_id)
    return {"task": task_view(task), "offers": [offer_view(offer) for offer in offers]}


@app.post("/households/{household_id}/tasks/{task_id}/accept", status_code=201)
def accept_single_task(
    household_id: int,
    task_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user)
    outcome = single_tasks.accept_task(claim_engine, session, household_id, task_id, user)
    snapshot = require_success(outcome)
    return {"offer": offer_view(snapshot), "siblings_released": outcome.siblings_released}


@app.post("/households/{household_id}/tasks/{task_id}/decline")
def decline_single_task(
    household_id: int,
    task_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user)
    snapshot = require_success(
        single_tasks.decline_task(claim_engine, session, household_id, task_id, user)
    )
    return {"offer": offer_view(snapshot)}


@app.delete("/households/{household_id}/tasks/{task_id}/responses/{child_id}")
def undo_single_task_response(
    household_id: int,
    task_id: int,
    child_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user)
    if child_id != user.id:
        raise HTTPException(status_code=403, detail="Access denied")
    snapshot = require_success(
        single_tasks.undo_decline(claim_engine, session, household_id, task_id, user)
    )
    return {"offer": offer_view(snapshot)}


@app.delete("/households/{household_id}/tasks/{task_id}/candidates/{candidate_id}", status_code=204)
def withdraw_single_task_offer(
    household_id: int,
    task_id: int,
    candidate_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user)
    require_success(
        single_tasks.withdraw_offer(claim_engine, session, household_id, task_id, candidate_id, user)
    )
    return Response(status_code=204)


@app.get("/households/{household_id}/tasks/{task_id}/candidates")
def list_task_candidates(
    household_id: int,
    task_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user, *PARENT_ROLES)
    task = session.exec(
        select(Task).where(Task.id == task_id, Task.household_id == household_id)
    ).first()
    if task is None:
        raise HTTPException(status_code=404, detail="Task not found or not a single task")
    candidates = single_tasks.candidate_statuses(session, task_id, claim_engine.clock())
    for candidate in candidates:
        if candidate["responded_at"]:
            candidate["responded_at"] = candidate["responded_at"].isoformat()
    return {"task": task_view(task), "candidates": candidates}


@app.get("/users/me/available-tasks")
def list_available_tasks(
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    tasks = single_tasks.available_tasks(session, user, claim_engine.clock())
    return {"tasks": [summary_view(summary) for summary in tasks]}


@app.get("/households/{household_id}/single-tasks/failed")
def list_failed_tasks(
    household_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user, *PARENT_ROLES)
    tasks = single_tasks.failed_tasks(session, household_id, claim_engine.clock())
    return {"tasks": [summary_view(summary) for summary in tasks]}


@app.get("/households/{household_id}/single-tasks/expired")
def list_expired_tasks(
    household_id: int,
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    require_membership(session, household_id, user, *PARENT_ROLES)
    tasks = single_tasks.expired_tasks(session, household_id, claim_engine.clock())
    return {"tasks": [summary_view(summary) for summary in tasks]}


# Maintenance


@app.post("/maintenance/expire")
def expire_stale_offers(
    session: Session = Depends(get_session),
    user: User = Depends(require_user),
):
    is_admin = session.exec(
        select(HouseholdMember.id).where(
            HouseholdMember.user_id == user.id, HouseholdMember.role == MemberRole.admin
        )
    ).first()
    if not is_admin:
        raise HTTPException(status_code=403, detail="Admin role required")
    count = claim_engine.expire_sweep()
    _LOGGER.info("expiry sweep requested by user %s", user.id)
    return {"expired": count}


@app.get("/health")
def health():
    return {"status": "ok"}
