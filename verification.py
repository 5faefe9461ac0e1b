"""
Provider verification workflow.

    incomplete -> pending -> approved | rejected
    approved | rejected | pending -> incomplete   (provider edits / withdraws)

Providers drive ``incomplete`` and ``pending`` through onboarding saves; only
admins decide ``approved`` and ``rejected``.
"""
from typing import Dict, FrozenSet, Optional

from errors import InvalidState, ValidationError

INCOMPLETE = "incomplete"
PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

TRANSITIONS: Dict[str, FrozenSet[str]] = {
    INCOMPLETE: frozenset({PENDING}),
    PENDING: frozenset({APPROVED, REJECTED, INCOMPLETE}),
    APPROVED: frozenset({INCOMPLETE}),
    REJECTED: frozenset({INCOMPLETE}),
}

ACTIONS = {"approve": APPROVED, "reject": REJECTED}

# A submission must carry these before it can be reviewed.
SUBMISSION_FIELDS = ("headline", "workDescription", "skills", "serviceAreas")

DEFAULT_REJECTION_REASON = "Your application did not meet our verification requirements."


def current_status(user: dict) -> str:
    return (user.get("providerDetails") or {}).get("verificationStatus") or INCOMPLETE


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def missing_submission_fields(details: dict):
    missing = []
    for field in SUBMISSION_FIELDS:
        value = details.get(field)
        if value is None or value == [] or (isinstance(value, str) and not value.strip()):
            missing.append(field)
    return missing


def self_service_changes(user: dict, target: str, merged_details: dict, now):
    """Return ``(set_fields, unset_fields)`` for a provider moving their own application to ``target``.

    Saving ``incomplete`` while already incomplete is a plain draft save.
    """
    current = current_status(user)
    if target == INCOMPLETE and current == INCOMPLETE:
        return {}, []
    if not can_transition(current, target) or target not in (INCOMPLETE, PENDING):
        raise InvalidState(f"Cannot change verification status from {current} to {target}")

    if target == PENDING:
        missing = missing_submission_fields(merged_details)
        if missing:
            raise ValidationError(
                f"Missing required field for submission: {missing[0]}",
                details=[f"{field} is required for submission" for field in missing],
            )
        return (
            {
                "providerDetails.verificationStatus": PENDING,
                "providerDetails.submittedAt": now,
                "providerDetails.isVerified": False,
            },
            [],
        )

    return (
        {"providerDetails.verificationStatus": INCOMPLETE, "providerDetails.isVerified": False},
        ["providerDetails.submittedAt"],
    )


def decision_changes(user: dict, action: str, rejection_reason: Optional[str]):
    """Return ``(set_fields, unset_fields)`` for an admin decision on ``user``."""
    if action not in ACTIONS:
        raise ValidationError("Invalid action. Use 'approve' or 'reject'.")
    if user.get("role") != "provider":
        raise ValidationError("User is not a provider")

    current = current_status(user)
    if current != PENDING:
        raise ValidationError(f"Cannot {action} a provider with status: {current}")

    if action == "approve":
        return (
            {"providerDetails.verificationStatus": APPROVED, "providerDetails.isVerified": True},
            ["providerDetails.submittedAt", "providerDetails.rejectionReason"],
        )

    reason = (rejection_reason or "").strip() or DEFAULT_REJECTION_REASON
    return (
        {
            "providerDetails.verificationStatus": REJECTED,
            "providerDetails.isVerified": False,
            "providerDetails.rejectionReason": reason,
        },
        [],
    )
