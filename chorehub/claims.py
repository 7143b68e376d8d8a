"""Exclusive-claim engine.

A claimable resource is offered ``open`` by one actor and taken by at most one
other actor per claim group. Every transition is a single conditional UPDATE
guarded on the expected current state, run inside one store transaction; the
database's conflict detection is the only arbiter between concurrent callers.
When a conditional update touches no rows the engine re-reads the row and
reports why, so callers always get a precise business outcome.

Business conditions are returned as :class:`ClaimOutcome` values. Only
infrastructure failures raise, as :class:`StoreUnavailable`.
"""

import logging
import random
import secrets
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Optional, TypeVar, Union

from sqlalchemy import and_, update
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import aliased
from sqlmodel import Session, select

from . import db
from .config import settings
from .models import ClaimableResource, ClaimState

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")
ResourceRef = Union[int, str]

# serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = {"40001", "40P01"}


class ClaimError(Exception):
    """Base class for claim engine failures."""


class StoreUnavailable(ClaimError):
    """The transaction could not be attempted or committed."""


class ConflictReason(str, Enum):
    not_found = "not_found"
    not_eligible = "not_eligible"
    expired = "expired"
    already_terminal = "already_terminal"
    already_claimed_by_other = "already_claimed_by_other"
    already_member = "already_member"
    forbidden = "forbidden"
    invalid_subject = "invalid_subject"


def is_lapsed(state: ClaimState, expires_at: datetime, now: datetime) -> bool:
    """True when an open resource has passed its expiry.

    This is the one definition of expiry. :func:`lapsed_clause` is the same
    test expressed in SQL for the sweep and the conditional updates.
    """
    return state == ClaimState.open and now >= expires_at


def lapsed_clause(now: datetime):
    return and_(
        ClaimableResource.state == ClaimState.open,
        ClaimableResource.expires_at <= now,
    )


@dataclass(frozen=True)
class ResourceSnapshot:
    id: int
    kind: str
    household_id: int
    subject_key: str
    group_key: str
    scope_id: Optional[int]
    token: Optional[str]
    state: ClaimState
    owner_user_id: int
    claimed_by_user_id: Optional[int]
    payload: dict
    created_at: datetime
    expires_at: datetime
    claimed_at: Optional[datetime]
    released_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    expired_at: Optional[datetime]

    @classmethod
    def from_row(cls, row: ClaimableResource, now: datetime) -> "ResourceSnapshot":
        state = ClaimState(row.state)
        if is_lapsed(state, row.expires_at, now):
            state = ClaimState.expired
        return cls(
            id=row.id,
            kind=row.kind,
            household_id=row.household_id,
            subject_key=row.subject_key,
            group_key=row.group_key,
            scope_id=row.scope_id,
            token=row.token,
            state=state,
            owner_user_id=row.owner_user_id,
            claimed_by_user_id=row.claimed_by_user_id,
            payload=dict(row.payload or {}),
            created_at=row.created_at,
            expires_at=row.expires_at,
            claimed_at=row.claimed_at,
            released_at=row.released_at,
            cancelled_at=row.cancelled_at,
            expired_at=row.expired_at,
        )


@dataclass(frozen=True)
class ClaimOutcome:
    ok: bool
    reason: Optional[ConflictReason] = None
    resource: Optional[ResourceSnapshot] = None
    siblings_released: int = 0

    @property
    def state(self) -> Optional[ClaimState]:
        return self.resource.state if self.resource else None

    @classmethod
    def success(cls, resource: ResourceSnapshot, siblings_released: int = 0) -> "ClaimOutcome":
        return cls(ok=True, resource=resource, siblings_released=siblings_released)

    @classmethod
    def conflict(
        cls, reason: ConflictReason, resource: Optional[ResourceSnapshot] = None
    ) -> "ClaimOutcome":
        return cls(ok=False, reason=reason, resource=resource)


Predicate = Callable[[Session, ClaimableResource, Any], bool]


@dataclass(frozen=True)
class ClaimPolicy:
    """Capabilities a resource kind plugs into the engine.

    ``group_key`` maps ``(household_id, scope_id, subject_key)`` to the claim
    group. ``claim_guard`` may veto a claim with an adapter specific reason and
    ``on_claimed`` runs inside the claiming transaction.
    """

    kind: str
    group_key: Callable[[int, Optional[int], str], str]
    is_eligible: Predicate
    can_cancel: Predicate
    exclusive_group: bool = False
    uses_token: bool = False
    allow_reopen: bool = False
    claim_guard: Optional[Callable[[Session, ClaimableResource, Any], Optional[ConflictReason]]] = None
    on_claimed: Optional[Callable[[Session, ClaimableResource, Any], None]] = None


def _is_retryable(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
    if code in _RETRYABLE_SQLSTATES:
        return True
    message = str(orig).lower()
    if isinstance(exc, OperationalError):
        return "locked" in message or "busy" in message or "deadlock" in message
    if isinstance(exc, IntegrityError):
        # a concurrent insert won; re-running the guards reports why
        return code == "23505" or "unique constraint failed" in message
    return False


@dataclass
class ClaimEngine:
    session_factory: Callable[[], Session] = field(default=db.session_factory)
    clock: Callable[[], datetime] = field(default=db.utcnow)
    max_attempts: int = field(default=settings.tx_attempts)

    @contextmanager
    def _transaction(self):
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def atomic(self, operation: str, work: Callable[[Session, datetime], T]) -> T:
        """Run ``work(session, now)`` in one transaction, retrying store conflicts."""
        attempt = 0
        while True:
            attempt += 1
            try:
                with self._transaction() as session:
                    return work(session, self.clock())
            except DBAPIError as exc:
                if _is_retryable(exc) and attempt < self.max_attempts:
                    _LOGGER.warning(
                        "%s: store conflict on attempt %d/%d, retrying",
                        operation,
                        attempt,
                        self.max_attempts,
                    )
                    time.sleep(random.uniform(0, 0.02 * 2 ** attempt))
                    continue
                _LOGGER.error("%s failed after %d attempt(s): %s", operation, attempt, exc)
                raise StoreUnavailable(f"{operation} could not be completed") from exc
            except SQLAlchemyError as exc:
                _LOGGER.error("%s failed: %s", operation, exc)
                raise StoreUnavailable(f"{operation} could not be completed") from exc

    # Lookups

    def _locate(
        self, session: Session, policy: Optional[ClaimPolicy], ref: ResourceRef
    ) -> Optional[ClaimableResource]:
        if isinstance(ref, int):
            resource = session.get(ClaimableResource, ref, populate_existing=True)
        else:
            statement = (
                select(ClaimableResource)
                .where(ClaimableResource.token == ref)
                .execution_options(populate_existing=True)
            )
            resource = session.exec(statement).first()
        if resource is None or (policy is not None and resource.kind != policy.kind):
            return None
        return resource

    def _group_winner(self, session: Session, group_key: str) -> Optional[int]:
        statement = select(ClaimableResource.claimed_by_user_id).where(
            ClaimableResource.group_key == group_key,
            ClaimableResource.state == ClaimState.claimed,
        )
        return session.exec(statement).first()

    def _no_claim_in_group(self, group_key: str):
        sibling = aliased(ClaimableResource)
        return ~(
            select(sibling.id)
            .where(sibling.group_key == group_key, sibling.state == ClaimState.claimed)
            .exists()
        )

    def _terminal_reason(
        self, session: Session, resource: ClaimableResource, actor, contested: bool = True
    ) -> ConflictReason:
        state = ClaimState(resource.state)
        if state == ClaimState.expired:
            return ConflictReason.expired
        if not contested:
            return ConflictReason.already_terminal
        winner = self._group_winner(session, resource.group_key)
        if winner is not None and winner != actor.id:
            return ConflictReason.already_claimed_by_other
        return ConflictReason.already_terminal

    def _reject(
        self, resource: ClaimableResource, now: datetime, reason: ConflictReason
    ) -> ClaimOutcome:
        _LOGGER.debug("resource %s: %s", resource.id, reason.value)
        return ClaimOutcome.conflict(reason, ResourceSnapshot.from_row(resource, now))

    # Conditional writes

    def _transition(
        self,
        session: Session,
        resource: ClaimableResource,
        now: datetime,
        expected: ClaimState,
        target: ClaimState,
        *guards,
        **values,
    ) -> bool:
        statement = (
            update(ClaimableResource)
            .where(
                ClaimableResource.id == resource.id,
                ClaimableResource.state == expected,
                *guards,
            )
            .values(state=target, updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        won = session.exec(statement).rowcount == 1
        session.refresh(resource)
        return won

    def _expire(self, session: Session, resource: ClaimableResource, now: datetime):
        if self._transition(
            session,
            resource,
            now,
            ClaimState.open,
            ClaimState.expired,
            ClaimableResource.expires_at <= now,
            expired_at=now,
        ):
            _LOGGER.info("resource %s expired lazily", resource.id)

    def _check_open(
        self,
        session: Session,
        resource: ClaimableResource,
        actor,
        now: datetime,
        contested: bool = True,
    ) -> Optional[ClaimOutcome]:
        """Reject terminal or lapsed resources, persisting a lazy expiry.

        ``contested`` operations (claim, release, reopen) report a group
        winner other than the actor as ``already_claimed_by_other``.
        """
        if ClaimState(resource.state).is_terminal:
            reason = self._terminal_reason(session, resource, actor, contested)
            return self._reject(resource, now, reason)
        if is_lapsed(resource.state, resource.expires_at, now):
            self._expire(session, resource, now)
            if resource.state == ClaimState.expired:
                return self._reject(resource, now, ConflictReason.expired)
            return self._lost_race(session, resource, actor, now, contested)
        return None

    def _lost_race(
        self,
        session: Session,
        resource: ClaimableResource,
        actor,
        now: datetime,
        contested: bool = True,
    ) -> ClaimOutcome:
        if resource.state == ClaimState.open:
            # still open, so the guard that failed was the group check
            return self._reject(resource, now, ConflictReason.already_claimed_by_other)
        reason = self._terminal_reason(session, resource, actor, contested)
        return self._reject(resource, now, reason)

    # Operations

    def open_in(
        self,
        session: Session,
        now: datetime,
        policy: ClaimPolicy,
        household_id: int,
        subject_key: str,
        owner_id: int,
        ttl: timedelta,
        scope_id: Optional[int] = None,
        payload: Optional[dict] = None,
    ) -> ClaimOutcome:
        """Open a resource inside a transaction the caller already holds."""
        subject_key = (subject_key or "").strip()
        if not subject_key or ttl <= timedelta(0):
            return ClaimOutcome.conflict(ConflictReason.invalid_subject)
        resource = ClaimableResource(
            kind=policy.kind,
            household_id=household_id,
            subject_key=subject_key,
            group_key=policy.group_key(household_id, scope_id, subject_key),
            scope_id=scope_id,
            token=secrets.token_hex(32) if policy.uses_token else None,
            owner_user_id=owner_id,
            payload=dict(payload or {}),
            created_at=now,
            expires_at=now + ttl,
            updated_at=now,
        )
        session.add(resource)
        session.flush()
        _LOGGER.info("opened %s resource %s in group %s", policy.kind, resource.id, resource.group_key)
        return ClaimOutcome.success(ResourceSnapshot.from_row(resource, now))

    def open(
        self,
        policy: ClaimPolicy,
        household_id: int,
        subject_key: str,
        owner_id: int,
        ttl: timedelta,
        scope_id: Optional[int] = None,
        payload: Optional[dict] = None,
    ) -> ClaimOutcome:
        return self.atomic(
            "open",
            lambda session, now: self.open_in(
                session, now, policy, household_id, subject_key, owner_id, ttl, scope_id, payload
            ),
        )

    def claim(self, policy: ClaimPolicy, ref: ResourceRef, actor) -> ClaimOutcome:
        def work(session: Session, now: datetime) -> ClaimOutcome:
            resource = self._locate(session, policy, ref)
            if resource is None:
                return ClaimOutcome.conflict(ConflictReason.not_found)
            if not policy.is_eligible(session, resource, actor):
                return self._reject(resource, now, ConflictReason.not_eligible)
            rejected = self._check_open(session, resource, actor, now)
            if rejected:
                return rejected
            if policy.claim_guard is not None:
                reason = policy.claim_guard(session, resource, actor)
                if reason is not None:
                    return self._reject(resource, now, reason)
            won = self._transition(
                session,
                resource,
                now,
                ClaimState.open,
                ClaimState.claimed,
                ClaimableResource.expires_at > now,
                self._no_claim_in_group(resource.group_key),
                claimed_by_user_id=actor.id,
                claimed_at=now,
            )
            if not won:
                return self._lost_race(session, resource, actor, now)
            released = 0
            if policy.exclusive_group:
                statement = (
                    update(ClaimableResource)
                    .where(
                        ClaimableResource.group_key == resource.group_key,
                        ClaimableResource.id != resource.id,
                        ClaimableResource.state == ClaimState.open,
                    )
                    .values(state=ClaimState.released, released_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                released = session.exec(statement).rowcount
            if policy.on_claimed is not None:
                policy.on_claimed(session, resource, actor)
            _LOGGER.info(
                "resource %s claimed by user %s, %d sibling(s) released",
                resource.id,
                actor.id,
                released,
            )
            return ClaimOutcome.success(ResourceSnapshot.from_row(resource, now), released)

        return self.atomic("claim", work)

    def release(self, policy: ClaimPolicy, ref: ResourceRef, actor) -> ClaimOutcome:
        def work(session: Session, now: datetime) -> ClaimOutcome:
            resource = self._locate(session, policy, ref)
            if resource is None:
                return ClaimOutcome.conflict(ConflictReason.not_found)
            if not policy.is_eligible(session, resource, actor):
                return self._reject(resource, now, ConflictReason.not_eligible)
            rejected = self._check_open(session, resource, actor, now)
            if rejected:
                return rejected
            if not self._transition(
                session,
                resource,
                now,
                ClaimState.open,
                ClaimState.released,
                ClaimableResource.expires_at > now,
                released_at=now,
            ):
                return self._lost_race(session, resource, actor, now)
            _LOGGER.info("resource %s released by user %s", resource.id, actor.id)
            return ClaimOutcome.success(ResourceSnapshot.from_row(resource, now))

        return self.atomic("release", work)

    def cancel(self, policy: ClaimPolicy, ref: ResourceRef, actor) -> ClaimOutcome:
        def work(session: Session, now: datetime) -> ClaimOutcome:
            resource = self._locate(session, policy, ref)
            if resource is None:
                return ClaimOutcome.conflict(ConflictReason.not_found)
            if not policy.can_cancel(session, resource, actor):
                return self._reject(resource, now, ConflictReason.forbidden)
            rejected = self._check_open(session, resource, actor, now, contested=False)
            if rejected:
                return rejected
            if not self._transition(
                session,
                resource,
                now,
                ClaimState.open,
                ClaimState.cancelled,
                cancelled_at=now,
            ):
                return self._lost_race(session, resource, actor, now, contested=False)
            _LOGGER.info("resource %s cancelled by user %s", resource.id, actor.id)
            return ClaimOutcome.success(ResourceSnapshot.from_row(resource, now))

        return self.atomic("cancel", work)

    def reopen(self, policy: ClaimPolicy, ref: ResourceRef, actor) -> ClaimOutcome:
        """Undo a release while nobody in the group has claimed."""
        if not policy.allow_reopen:
            raise ValueError(f"{policy.kind} resources cannot be reopened")

        def work(session: Session, now: datetime) -> ClaimOutcome:
            resource = self._locate(session, policy, ref)
            if resource is None:
                return ClaimOutcome.conflict(ConflictReason.not_found)
            if not policy.is_eligible(session, resource, actor):
                return self._reject(resource, now, ConflictReason.not_eligible)
            state = ClaimState(resource.state)
            if state == ClaimState.open:
                rejected = self._check_open(session, resource, actor, now)
                return rejected or ClaimOutcome.success(ResourceSnapshot.from_row(resource, now))
            if state != ClaimState.released:
                return self._reject(resource, now, self._terminal_reason(session, resource, actor))
            if now >= resource.expires_at:
                return self._reject(resource, now, ConflictReason.expired)
            if not self._transition(
                session,
                resource,
                now,
                ClaimState.released,
                ClaimState.open,
                ClaimableResource.expires_at > now,
                self._no_claim_in_group(resource.group_key),
                released_at=None,
            ):
                if resource.state == ClaimState.released:
                    return self._reject(resource, now, ConflictReason.already_claimed_by_other)
                return self._lost_race(session, resource, actor, now)
            _LOGGER.info("resource %s reopened by user %s", resource.id, actor.id)
            return ClaimOutcome.success(ResourceSnapshot.from_row(resource, now))

        return self.atomic("reopen", work)

    def expire_sweep(self, now: Optional[datetime] = None) -> int:
        def work(session: Session, clock_now: datetime) -> int:
            at = now or clock_now
            statement = (
                update(ClaimableResource)
                .where(lapsed_clause(at))
                .values(state=ClaimState.expired, expired_at=at, updated_at=at)
                .execution_options(synchronize_session=False)
            )
            return session.exec(statement).rowcount

        count = self.atomic("expire_sweep", work)
        if count:
            _LOGGER.info("expiry sweep moved %d resource(s) to expired", count)
        return count

    def inspect(
        self, ref: ResourceRef, policy: Optional[ClaimPolicy] = None
    ) -> Optional[ResourceSnapshot]:
        def work(session: Session, now: datetime) -> Optional[ResourceSnapshot]:
            resource = self._locate(session, policy, ref)
            return ResourceSnapshot.from_row(resource, now) if resource else None

        return self.atomic("inspect", work)
