"""
Pass lifecycle: requests, parent/warden approval, rejection and listings.

Status changes are checked against TRANSITIONS; anything not listed there
raises InvalidStateError. Writes go through PassStore.update_with_retry so
concurrent approvals on one pass cannot interleave.
"""
import logging
import os
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional

from clock import to_naive_utc, utcnow
from errors import AuthorizationError, InvalidStateError, NotFoundError, ValidationError
from models import Pass, PassStatus, Role, User
from notifier import WARDEN_CHANNEL, NotificationDispatcher, parent_channel, user_channel
from permissions import is_permitted
from store import PassStore
from users import UserDirectory

logger = logging.getLogger(__name__)

HISTORY_LIMIT = int(os.getenv("HISTORY_LIMIT", "100"))

OUTING = "outing"

TRANSITIONS = {
    PassStatus.PENDING: {PassStatus.APPROVED_PARENT, PassStatus.APPROVED_WARDEN, PassStatus.REJECTED},
    PassStatus.APPROVED_PARENT: {PassStatus.APPROVED_WARDEN, PassStatus.REJECTED},
    PassStatus.ACTIVE: {PassStatus.EXITED},
    PassStatus.APPROVED: {PassStatus.EXITED},
    PassStatus.APPROVED_WARDEN: {PassStatus.EXITED},
    PassStatus.EXITED: {PassStatus.ENTERED},
    PassStatus.REJECTED: set(),
    PassStatus.ENTERED: set(),
}

# States the gate accepts. approved_parent is deliberately absent: parent
# sign-off alone does not open the gate.
SCANNABLE = frozenset({
    PassStatus.ACTIVE,
    PassStatus.APPROVED,
    PassStatus.APPROVED_WARDEN,
    PassStatus.EXITED,
})

PENDING_FOR_WARDEN = (PassStatus.PENDING, PassStatus.APPROVED_PARENT)


def can_transition(current: PassStatus, target: PassStatus) -> bool:
    return target in TRANSITIONS.get(PassStatus(current), set())


def ensure_transition(current: PassStatus, target: PassStatus) -> None:
    if not can_transition(current, target):
        raise InvalidStateError(
            current,
            f"Cannot move pass from {PassStatus(current).value} to {target.value}",
        )


class PassManager:
    """
    Owns the pass state machine up to the gate.

    Notifications go through the injected dispatcher and never affect the
    outcome of an operation.
    """

    def __init__(
        self,
        store: PassStore,
        users: UserDirectory,
        dispatcher: NotificationDispatcher,
        clock: Callable[[], datetime] = utcnow,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.store = store
        self.users = users
        self.dispatcher = dispatcher
        self.clock = clock
        self.history_limit = history_limit

    # Creation

    def create_pass(
        self,
        requester_id: str,
        pass_type: str,
        purpose: Optional[str],
        valid_from: datetime,
        valid_to: datetime,
    ) -> Pass:
        if not requester_id or not pass_type or not valid_from or not valid_to:
            raise ValidationError("userId, type, validFrom, validTo required")
        valid_from = to_naive_utc(valid_from)
        valid_to = to_naive_utc(valid_to)
        if valid_from > valid_to:
            raise ValidationError("validFrom must not be after validTo")

        requester = self.users.get_by_id(requester_id)
        if not requester:
            raise NotFoundError("User not found")

        now = self.clock()
        status = PassStatus.PENDING if requester.role == Role.STUDENT else PassStatus.ACTIVE
        record = self.store.create(Pass(
            id=str(uuid.uuid4()),
            user_id=requester.id,
            type=pass_type,
            purpose=purpose,
            valid_from=valid_from,
            valid_to=valid_to,
            barcode=str(uuid.uuid4()),
            status=status,
            version=1,
            created_at=now,
            updated_at=now,
        ))
        logger.info(f"Pass {record.id} created for {requester.id} ({pass_type}) as {status.value}")

        title = "New Pass Request"
        body = f"{requester.name} has requested a new {pass_type} pass."
        data = {"type": "pass_request", "passId": record.id, "studentId": requester.id}
        if requester.parent_id:
            self.dispatcher.send(parent_channel(requester.parent_id), title, body, data)
        self.dispatcher.send(WARDEN_CHANNEL, title, body, data)
        return record

    # Approval / rejection

    def approve_by_parent(self, pass_id: str, caller_id: str) -> Pass:
        record = self._require(pass_id)
        owner = self.users.get_by_id(record.user_id)
        caller = self.users.get_by_id(caller_id)
        if not caller or not is_permitted(caller.role, caller.id, "approve_parent", owner):
            raise AuthorizationError("Unauthorized: You are not the parent of this student.")

        updated = self._transition(pass_id, PassStatus.APPROVED_PARENT)
        logger.info(f"Pass {pass_id} approved by parent {caller_id}")

        self._notify_owner(owner, "Pass Approved by Parent",
                           "Your outing pass has been approved by your parent.",
                           {"type": "pass_approved", "passId": pass_id,
                            "status": PassStatus.APPROVED_PARENT.value})
        self.dispatcher.send(WARDEN_CHANNEL, "Pending Warden Approval",
                             "A pass has been approved by parent and is waiting for your approval.",
                             {"type": "pass_request", "passId": pass_id})
        return updated

    def approve_by_warden(self, pass_id: str) -> Pass:
        record = self._require(pass_id)
        updated = self._transition(pass_id, PassStatus.APPROVED_WARDEN)
        logger.info(f"Pass {pass_id} approved by warden")

        self._notify_owner(self.users.get_by_id(record.user_id), "Pass Approved by Warden",
                           "Your outing pass has been approved by the warden!",
                           {"type": "pass_approved", "passId": pass_id,
                            "status": PassStatus.APPROVED_WARDEN.value})
        return updated

    def reject_pass(self, pass_id: str, reason: Optional[str]) -> Pass:
        if not reason or not reason.strip():
            raise ValidationError("Rejection reason is required")
        record = self._require(pass_id)
        updated = self._transition(pass_id, PassStatus.REJECTED, rejection_reason=reason)
        logger.info(f"Pass {pass_id} rejected: {reason}")

        self._notify_owner(self.users.get_by_id(record.user_id), "Pass Rejected",
                           f"Your pass request was rejected. Reason: {reason}",
                           {"type": "pass_rejected", "passId": pass_id, "reason": reason})
        return updated

    # Queries

    def get_pass(self, pass_id: str) -> Pass:
        return self._require(pass_id)

    def list_for_user(self, user_id: str) -> List[Pass]:
        return self.store.query(user_ids=[user_id])

    def list_pending_for_warden(self) -> List[Pass]:
        return self.store.query(statuses=PENDING_FOR_WARDEN)

    def list_pending_for_parent(self, parent_id: str) -> List[Pass]:
        child_ids = [child.id for child in self.users.find_children_of(parent_id)]
        if not child_ids:
            return []
        return self.store.query(
            statuses=[PassStatus.PENDING],
            user_ids=child_ids,
            pass_type=OUTING,
        )

    def list_history_for_warden(self, limit: Optional[int] = None) -> List[Pass]:
        limit = self.history_limit if limit is None else limit
        return self.store.query(
            exclude_statuses=[PassStatus.PENDING],
            order_by="updated_at",
            limit=limit,
        )

    # Helpers

    def _require(self, pass_id: str) -> Pass:
        record = self.store.get(pass_id) if pass_id else None
        if not record:
            raise NotFoundError("Pass not found")
        return record

    def _transition(self, pass_id: str, target: PassStatus, **fields) -> Pass:
        def plan(current: Pass) -> Dict:
            ensure_transition(current.status, target)
            patch = {"status": target, "updated_at": self.clock()}
            patch.update(fields)
            return patch

        return self.store.update_with_retry(lambda: self._require(pass_id), plan)

    def _notify_owner(self, owner: Optional[User], title: str, body: str, data: Dict) -> None:
        if owner is None:
            logger.warning(f"Pass owner missing, skipping notification: {title}")
            return
        self.dispatcher.send(user_channel(owner), title, body, data)
