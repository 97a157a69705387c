"""
Donation request lifecycle

    pending --confirm / assign--> inprogress --done--> done
                                             --cancel--> canceled

Who may move a request is decided per document: the caller can act as the
requester (created it), the assigned donor (donorEmail is theirs) or a
claimant (their patch sets donorEmail to themselves). TRANSITIONS lists, for
every allowed (from, to) pair, which of those capacities may make the move;
evaluate_patch() is the one place that reads it.

Lifecycle writes go through DonationRequestStore.update_if_status(), a single
conditional update on {_id, status}, so two callers racing on the same
request cannot both succeed.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple

from pydantic import ValidationError

from auth import Caller, same_email
from database import DonationRequestStore, UserStore, now, oid
from errors import Conflict, Forbidden, InvalidTransition, NotFound, ValidationFailed
from schemas import (
    CANCELED, DONE, FINAL_STATUSES, INPROGRESS, PENDING, REQUEST_STATUSES,
    DonationRequest, DonationRequestPatch,
)

logger = logging.getLogger(__name__)

REQUESTER = "requester"
ASSIGNED_DONOR = "assigned_donor"
CLAIMANT = "claimant"

TRANSITIONS = {
    (PENDING, PENDING): {REQUESTER},
    (PENDING, INPROGRESS): {REQUESTER, CLAIMANT},
    (INPROGRESS, INPROGRESS): {REQUESTER},
    (INPROGRESS, DONE): {ASSIGNED_DONOR},
    (INPROGRESS, CANCELED): {ASSIGNED_DONOR},
}

IMMUTABLE_FIELDS = ("_id", "createdAt", "requesterEmail")
SERVER_STAMPS = ("assignedAt", "completedAt", "updatedAt")
LIFECYCLE_FIELDS = ("status", "donorEmail", "donorName")


def normalize_status(value) -> str:
    if not isinstance(value, str):
        raise ValidationFailed("status must be a string")
    status = value.strip().lower()
    for ch in "-_ ":
        status = status.replace(ch, "")
    if status == "cancelled":
        status = CANCELED
    if status not in REQUEST_STATUSES:
        raise ValidationFailed(f"Invalid status '{value}'. Allowed: {', '.join(REQUEST_STATUSES)}")
    return status


def stored_status(document: dict) -> str:
    status = (document.get("status") or PENDING).lower()
    return CANCELED if status == "cancelled" else status


def donor_display_name(email: str, profile: Optional[dict]) -> str:
    if profile and profile.get("name"):
        return profile["name"]
    return email.split("@")[0]


def reject_operator_keys(data: dict):
    bad = [k for k in data if k.startswith("$") or "." in k]
    if bad:
        raise ValidationFailed(f"Invalid field name(s): {', '.join(sorted(bad))}")


def describe_validation_error(error: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in err['loc'])}: {err['msg']}" for err in error.errors()
    )


# ---------------- Policy -----------------

@dataclass
class Decision:
    """Outcome of evaluate_patch().

    `changes` is the $set document to write. When `conditional` is true the
    write must only apply while the stored status still equals
    `expected_status`.
    """
    changes: dict = field(default_factory=dict)
    conditional: bool = False
    expected_status: Optional[str] = None
    transition: Optional[Tuple[str, str]] = None


def capacities(caller: Caller, document: dict, new_donor: Optional[str] = None) -> set:
    held = set()
    if same_email(caller.email, document.get("requesterEmail")):
        held.add(REQUESTER)
    if same_email(caller.email, document.get("donorEmail")):
        held.add(ASSIGNED_DONOR)
    if new_donor and same_email(caller.email, new_donor):
        held.add(CLAIMANT)
    return held


def check_transition(current: str, target: str, held: set):
    allowed = TRANSITIONS.get((current, target))
    if allowed is None:
        # an assigned request belongs to its donor; strangers are refused outright
        if target in FINAL_STATUSES and current != PENDING and ASSIGNED_DONOR not in held:
            raise Forbidden("You are not assigned to this request.")
        raise InvalidTransition(f"Cannot change status from '{current}' to '{target}'")
    if not allowed & held:
        if target in FINAL_STATUSES:
            raise Forbidden("You are not assigned to this request.")
        raise Forbidden("Only the requester can change the status of this request")


def evaluate_patch(caller: Caller, document: dict, payload: dict, donor_profile: Optional[dict] = None) -> Decision:
    """Decide whether `caller` may apply `payload` to `document`.

    Raises Forbidden, InvalidTransition or ValidationFailed on denial.
    `donor_profile` is the user record of a newly named donor, if any; it
    only supplies a donorName when the payload has none.
    """
    reject_operator_keys(payload)
    changes = {k: v for k, v in payload.items() if k not in IMMUTABLE_FIELDS and k not in SERVER_STAMPS}
    current = stored_status(document)
    stamp = now()

    status_given = "status" in changes
    target = current
    if status_given:
        target = normalize_status(changes["status"])
        changes["status"] = target

    incoming, existing = changes.get("donorEmail"), document.get("donorEmail")
    donor_changing = "donorEmail" in changes and bool(incoming or existing) and not same_email(incoming, existing)
    if not donor_changing:
        changes.pop("donorEmail", None)
        changes.pop("donorName", None)
    new_donor = changes.get("donorEmail")
    held = capacities(caller, document, new_donor)

    descriptive = [k for k in changes if k not in LIFECYCLE_FIELDS]
    if descriptive and REQUESTER not in held and not caller.is_admin:
        raise Forbidden("Only the requester or an admin can edit this request")

    if donor_changing:
        if not new_donor:
            raise InvalidTransition("An assigned donor cannot be removed")
        if current in FINAL_STATUSES:
            raise InvalidTransition(f"A {current} request cannot be reassigned")
        if not held & {REQUESTER, CLAIMANT}:
            raise Forbidden("Only the requester can assign another donor")
        new_donor = new_donor.lower()
        changes["donorEmail"] = new_donor
        if not changes.get("donorName"):
            changes["donorName"] = donor_display_name(new_donor, donor_profile)
        changes["assignedAt"] = stamp
        if not status_given and current == PENDING:
            target = INPROGRESS
            changes["status"] = target

    lifecycle = status_given or donor_changing
    if lifecycle:
        check_transition(current, target, held)
        resulting_donor = new_donor or document.get("donorEmail")
        if target == PENDING and resulting_donor:
            raise InvalidTransition("A request with an assigned donor cannot return to pending")
        if target != PENDING and not resulting_donor:
            raise InvalidTransition("Assign a donor before moving the request out of pending")
        if target in FINAL_STATUSES:
            changes["completedAt"] = stamp

    if not changes:
        return Decision()
    changes["updatedAt"] = stamp
    return Decision(
        changes=changes,
        conditional=lifecycle,
        expected_status=document.get("status") if lifecycle else None,
        transition=(current, target) if lifecycle else None,
    )


# ---------------- Manager -----------------

class LifecycleManager:
    def __init__(self, requests: DonationRequestStore, users: UserStore):
        self.requests = requests
        self.users = users

    def _load(self, request_id: str):
        _id = oid(request_id)
        document = self.requests.get(_id)
        if not document:
            raise NotFound("Request not found")
        return _id, document

    def create(self, caller: Caller, body: DonationRequest) -> str:
        data = body.model_dump(exclude_none=True)
        reject_operator_keys(data)
        if not same_email(data["requesterEmail"], caller.email):
            raise Forbidden("requesterEmail must be your own email")
        status = data.pop("status", None)
        if status is not None and normalize_status(status) != PENDING:
            raise InvalidTransition("New requests always start as pending")

        doc = {k: v for k, v in data.items() if k not in IMMUTABLE_FIELDS + LIFECYCLE_FIELDS + SERVER_STAMPS}
        doc.update(
            requesterEmail=caller.email,
            status=PENDING,
            donorName=None,
            donorEmail=None,
            createdAt=now(),
        )
        inserted_id = self.requests.insert(doc)
        logger.info("Request %s created by %s", inserted_id, caller.email)
        return inserted_id

    def list(self, caller: Caller, status: str = None, requester_email: str = None, donor_email: str = None):
        query = {}
        if status:
            query["status"] = normalize_status(status)
        # donors only ever see their own requests
        if caller.role == "donor":
            query["requesterEmail"] = caller.email
        elif requester_email:
            query["requesterEmail"] = requester_email.lower()
        if donor_email:
            query["donorEmail"] = donor_email.lower()
        return self.requests.find(query)

    def list_pending(self):
        return self.requests.find({"status": PENDING})

    def get(self, request_id: str) -> dict:
        return self._load(request_id)[1]

    def get_pending(self, request_id: str) -> dict:
        document = self.requests.get(oid(request_id))
        if not document or document.get("status") != PENDING:
            raise NotFound("Pending donation request not found")
        return document

    def confirm(self, caller: Caller, request_id: str) -> dict:
        _id = oid(request_id)
        donor = self.users.find_by_email(caller.email)
        if not donor:
            raise NotFound("Donor not found in database")

        stamp = now()
        donor_email = donor["email"].lower()
        donor_name = donor_display_name(donor_email, donor)
        updated = self.requests.update_if_status(_id, PENDING, {
            "status": INPROGRESS,
            "donorName": donor_name,
            "donorEmail": donor_email,
            "assignedAt": stamp,
            "updatedAt": stamp,
        })
        if updated is None:
            raise NotFound("Pending donation request not found or already confirmed")

        logger.info("Request %s: pending -> inprogress, confirmed by %s", request_id, donor_email)
        return {
            "message": "Donation confirmed successfully",
            "status": INPROGRESS,
            "donorName": donor_name,
            "donorEmail": donor_email,
        }

    def update(self, caller: Caller, request_id: str, payload: dict) -> dict:
        _id, document = self._load(request_id)
        if not isinstance(payload, dict):
            raise ValidationFailed("Request body must be a JSON object")

        cleaned = {k: v for k, v in payload.items() if k not in IMMUTABLE_FIELDS and k not in SERVER_STAMPS}
        try:
            patch = DonationRequestPatch.model_validate(cleaned)
        except ValidationError as e:
            raise ValidationFailed(describe_validation_error(e))
        changes = {k: v for k, v in patch.model_dump().items() if k in cleaned}

        donor_profile = None
        new_donor = changes.get("donorEmail")
        if new_donor and not same_email(new_donor, document.get("donorEmail")):
            donor_profile = self.users.find_by_email(new_donor)

        decision = evaluate_patch(caller, document, changes, donor_profile)
        if not decision.changes:
            return document

        if not decision.conditional:
            updated = self.requests.update(_id, decision.changes)
            if updated is None:
                raise NotFound("Request not found")
            return updated

        updated = self.requests.update_if_status(_id, decision.expected_status, decision.changes)
        if updated is None:
            raise Conflict("Request changed while updating, reload and try again")
        before, after = decision.transition
        logger.info("Request %s: %s -> %s by %s", request_id, before, after, caller.email)
        return updated

    def finalize(self, caller: Caller, request_id: str, status: str) -> dict:
        target = normalize_status(status)
        if target not in FINAL_STATUSES:
            raise ValidationFailed("Invalid status. Allowed: done, canceled")
        return self.update(caller, request_id, {"status": target})

    def replace(self, caller: Caller, request_id: str, body: DonationRequest) -> dict:
        _id, document = self._load(request_id)
        if not same_email(caller.email, document.get("requesterEmail")) and not caller.is_admin:
            raise Forbidden("Not authorized to update this request")

        data = body.model_dump(exclude_none=True)
        reject_operator_keys(data)
        kept = IMMUTABLE_FIELDS + LIFECYCLE_FIELDS + SERVER_STAMPS
        replacement = {k: v for k, v in data.items() if k not in kept}
        for key in kept:
            if key in document:
                replacement[key] = document[key]
        replacement["updatedAt"] = now()

        updated = self.requests.replace(_id, replacement)
        if updated is None:
            raise NotFound("Request not found")
        logger.info("Request %s replaced by %s", request_id, caller.email)
        return updated

    def delete(self, caller: Caller, request_id: str):
        _id, document = self._load(request_id)
        if not same_email(caller.email, document.get("requesterEmail")) and not caller.is_admin:
            raise Forbidden("Not authorized to delete this request")
        self.requests.delete(_id)
        logger.info("Request %s deleted by %s", request_id, caller.email)
