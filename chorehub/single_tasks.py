"""Single-assignment tasks.

A single task is offered to several child members at once. Each candidate gets
a claimable resource; they all share the task as their claim group, so the
first accepted offer releases every other open offer in the same transaction.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from math import ceil
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
    HouseholdMember,
    MemberRole,
    Task,
    TaskStatus,
    User,
)

_LOGGER = logging.getLogger(__name__)

KIND = "task_candidate"


class TaskRejected(ValueError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class TaskSummary:
    id: int
    household_id: int
    title: str
    description: Optional[str]
    points: int
    deadline: Optional[datetime]
    candidate_count: int
    decline_count: int
    days_until_deadline: Optional[int] = None


def _group_key(household_id: int, scope_id: Optional[int], subject_key: str) -> str:
    return f"task:{scope_id}"


def _is_eligible(session: Session, resource: ClaimableResource, actor: User) -> bool:
    if resource.subject_key != str(actor.id):
        return False
    return get_membership(session, resource.household_id, actor.id) is not None


def _can_cancel(session: Session, resource: ClaimableResource, actor: User) -> bool:
    if resource.owner_user_id == actor.id:
        return True
    return has_role(
        session, resource.household_id, actor.id, MemberRole.admin, MemberRole.parent
    )


def _assign_task(session: Session, resource: ClaimableResource, actor: User):
    task = session.get(Task, resource.scope_id)
    task.assignee_user_id = actor.id
    task.status = TaskStatus.assigned
    task.updated_at = resource.claimed_at
    session.add(task)
    session.flush()


SINGLE_TASK_POLICY = ClaimPolicy(
    kind=KIND,
    group_key=_group_key,
    is_eligible=_is_eligible,
    can_cancel=_can_cancel,
    exclusive_group=True,
    allow_reopen=True,
    on_claimed=_assign_task,
)


def create_single_task(
    engine: ClaimEngine,
    household_id: int,
    creator: User,
    title: str,
    candidate_ids: list[int],
    points: int = 0,
    description: Optional[str] = None,
    deadline: Optional[datetime] = None,
) -> tuple[int, list[ResourceSnapshot]]:
    """Create the task and one open offer per candidate, atomically."""
    title = (title or "").strip()
    if not title:
        raise TaskRejected("Title is required")
    if points < 0:
        raise TaskRejected("Points must not be negative")
    candidate_ids = list(dict.fromkeys(candidate_ids))
    if not candidate_ids:
        raise TaskRejected("At least one candidate child is required for single tasks")

    def work(session: Session, now: datetime) -> tuple[int, list[ResourceSnapshot]]:
        if deadline is not None and deadline <= now:
            raise TaskRejected("Deadline must be in the future")
        children = set(
            session.exec(
                select(HouseholdMember.user_id).where(
                    HouseholdMember.household_id == household_id,
                    HouseholdMember.user_id.in_(candidate_ids),
                    HouseholdMember.role == MemberRole.child,
                )
            ).all()
        )
        missing = [candidate for candidate in candidate_ids if candidate not in children]
        if missing:
            raise TaskRejected(f"Candidates are not children of this household: {missing}")
        task = Task(
            household_id=household_id,
            title=title,
            description=description,
            points=points,
            deadline=deadline,
            created_by_user_id=creator.id,
            created_at=now,
            updated_at=now,
        )
        session.add(task)
        session.flush()
        ttl = deadline - now if deadline else timedelta(days=settings.task_offer_ttl_days)
        offers = [
            engine.open_in(
                session,
                now,
                SINGLE_TASK_POLICY,
                household_id,
                str(candidate),
                creator.id,
                ttl,
                scope_id=task.id,
            ).resource
            for candidate in candidate_ids
        ]
        _LOGGER.info("single task %s offered to %d candidate(s)", task.id, len(offers))
        return task.id, offers

    return engine.atomic("create_single_task", work)


def find_offer(
    session: Session, household_id: int, task_id: int, user_id: int
) -> tuple[Optional[Task], Optional[int]]:
    task = session.exec(
        select(Task).where(Task.id == task_id, Task.household_id == household_id)
    ).first()
    if task is None:
        return None, None
    offer_id = session.exec(
        select(ClaimableResource.id).where(
            ClaimableResource.kind == KIND,
            ClaimableResource.scope_id == task_id,
            ClaimableResource.subject_key == str(user_id),
        )
    ).first()
    return task, offer_id


def _respond(session: Session, household_id: int, task_id: int, user: User, operation) -> ClaimOutcome:
    task, offer_id = find_offer(session, household_id, task_id, user.id)
    if task is None:
        return ClaimOutcome.conflict(ConflictReason.not_found)
    if offer_id is None:
        return ClaimOutcome.conflict(ConflictReason.not_eligible)
    return operation(SINGLE_TASK_POLICY, offer_id, user)


def accept_task(
    engine: ClaimEngine, session: Session, household_id: int, task_id: int, user: User
) -> ClaimOutcome:
    return _respond(session, household_id, task_id, user, engine.claim)


def decline_task(
    engine: ClaimEngine, session: Session, household_id: int, task_id: int, user: User
) -> ClaimOutcome:
    return _respond(session, household_id, task_id, user, engine.release)


def undo_decline(
    engine: ClaimEngine, session: Session, household_id: int, task_id: int, user: User
) -> ClaimOutcome:
    return _respond(session, household_id, task_id, user, engine.reopen)


def withdraw_offer(
    engine: ClaimEngine,
    session: Session,
    household_id: int,
    task_id: int,
    candidate_id: int,
    user: User,
) -> ClaimOutcome:
    task, offer_id = find_offer(session, household_id, task_id, candidate_id)
    if task is None or offer_id is None:
        return ClaimOutcome.conflict(ConflictReason.not_found)
    return engine.cancel(SINGLE_TASK_POLICY, offer_id, user)


def _offers_by_task(session: Session, household_id: int) -> dict[int, list[ClaimableResource]]:
    rows = session.exec(
        select(ClaimableResource).where(
            ClaimableResource.kind == KIND,
            ClaimableResource.household_id == household_id,
        )
    ).all()
    grouped = defaultdict(list)
    for row in rows:
        grouped[row.scope_id].append(row)
    return grouped


def _summarize(task: Task, offers: list[ClaimableResource], now: datetime) -> TaskSummary:
    days = None
    if task.deadline is not None:
        days = ceil((task.deadline - now).total_seconds() / 86400)
    return TaskSummary(
        id=task.id,
        household_id=task.household_id,
        title=task.title,
        description=task.description,
        points=task.points,
        deadline=task.deadline,
        candidate_count=len(offers),
        decline_count=sum(1 for offer in offers if offer.state == ClaimState.released),
        days_until_deadline=days,
    )


def candidate_statuses(session: Session, task_id: int, now: Optional[datetime] = None) -> list[dict]:
    now = now or utcnow()
    offers = session.exec(
        select(ClaimableResource).where(
            ClaimableResource.kind == KIND, ClaimableResource.scope_id == task_id
        )
    ).all()
    users = {
        user.id: user
        for user in session.exec(
            select(User).where(User.id.in_([int(offer.subject_key) for offer in offers]))
        ).all()
    }
    statuses = []
    for offer in offers:
        snapshot = ResourceSnapshot.from_row(offer, now)
        user = users.get(int(offer.subject_key))
        statuses.append(
            {
                "user_id": int(offer.subject_key),
                "display_name": user.display_name if user else None,
                "state": snapshot.state.value,
                "responded_at": snapshot.claimed_at or snapshot.released_at,
            }
        )
    return sorted(statuses, key=lambda status: status["display_name"] or "")


def available_tasks(session: Session, user: User, now: Optional[datetime] = None) -> list[TaskSummary]:
    """Tasks with a live open offer for ``user``."""
    now = now or utcnow()
    offers = session.exec(
        select(ClaimableResource).where(
            ClaimableResource.kind == KIND,
            ClaimableResource.subject_key == str(user.id),
            ClaimableResource.state == ClaimState.open,
            ClaimableResource.expires_at > now,
        )
    ).all()
    summaries = []
    for offer in offers:
        task = session.get(Task, offer.scope_id)
        siblings = session.exec(
            select(ClaimableResource).where(ClaimableResource.group_key == offer.group_key)
        ).all()
        summaries.append(_summarize(task, siblings, now))
    return sorted(summaries, key=lambda s: (s.deadline is None, s.deadline or now, -s.id))


def failed_tasks(session: Session, household_id: int, now: Optional[datetime] = None) -> list[TaskSummary]:
    """Tasks every candidate declined."""
    now = now or utcnow()
    grouped = _offers_by_task(session, household_id)
    failed = []
    for task_id, offers in grouped.items():
        if offers and all(offer.state == ClaimState.released for offer in offers):
            failed.append(_summarize(session.get(Task, task_id), offers, now))
    return sorted(failed, key=lambda s: (s.deadline is None, s.deadline or now, -s.id))


def expired_tasks(session: Session, household_id: int, now: Optional[datetime] = None) -> list[TaskSummary]:
    """Tasks past their deadline that nobody accepted."""
    now = now or utcnow()
    grouped = _offers_by_task(session, household_id)
    expired = []
    for task_id, offers in grouped.items():
        task = session.get(Task, task_id)
        if task.deadline is None or task.deadline > now:
            continue
        if any(offer.state == ClaimState.claimed for offer in offers):
            continue
        expired.append(_summarize(task, offers, now))
    return sorted(expired, key=lambda s: s.deadline, reverse=True)
