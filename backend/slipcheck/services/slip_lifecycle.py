"""Slip status state machine.

Pure: answers "may this actor move a slip from A to B" without touching the
database. ``slip_service`` enforces the answer and records the transition.
"""

from __future__ import annotations

from typing import Optional

from slipcheck.schemas.slip import SlipStatus

SYSTEM_ACTOR = "SYSTEM"
STAFF_ACTORS = frozenset({"CASHIER", "MANAGER", "ADMIN"})
_ANY = frozenset({SYSTEM_ACTOR}) | STAFF_ACTORS

TERMINAL_STATUSES = frozenset({SlipStatus.VALIDATED, SlipStatus.FAILED})

# (from, to) -> actors allowed to make the move.
ALLOWED_TRANSITIONS: dict[tuple[SlipStatus, SlipStatus], frozenset[str]] = {
    (SlipStatus.PROCESSING, SlipStatus.VALIDATED): _ANY,
    (SlipStatus.PROCESSING, SlipStatus.FAILED): _ANY,
    (SlipStatus.PROCESSING, SlipStatus.PENDING): frozenset({SYSTEM_ACTOR}),
    (SlipStatus.PENDING, SlipStatus.PROCESSING): _ANY,
    (SlipStatus.PENDING, SlipStatus.VALIDATED): STAFF_ACTORS,
    (SlipStatus.PENDING, SlipStatus.FAILED): STAFF_ACTORS,
    (SlipStatus.PENDING, SlipStatus.PENDING): STAFF_ACTORS,
    (SlipStatus.VALIDATED, SlipStatus.PENDING): STAFF_ACTORS,
    (SlipStatus.FAILED, SlipStatus.PENDING): STAFF_ACTORS,
}


def initial_status(*, ocr_now: bool) -> SlipStatus:
    return SlipStatus.PROCESSING if ocr_now else SlipStatus.PENDING


def is_known_transition(current: SlipStatus, new: SlipStatus) -> bool:
    return (current, new) in ALLOWED_TRANSITIONS


def is_allowed_transition(current: SlipStatus, new: SlipStatus, actor: str) -> bool:
    return actor in ALLOWED_TRANSITIONS.get((current, new), frozenset())


def requires_review_request(current: SlipStatus, new: SlipStatus) -> bool:
    """Re-opening a slip to ``pending`` must flag it for manual follow-up."""
    return new == SlipStatus.PENDING and current != SlipStatus.PROCESSING


def is_terminal(status: SlipStatus) -> bool:
    return status in TERMINAL_STATUSES


def should_keep_polling(status: Optional[str]) -> bool:
    return status == SlipStatus.PROCESSING.value


def resolve_auto_status(*, is_slip: bool, match: Optional[bool], amount_match: Optional[bool]) -> SlipStatus:
    """Status a processing slip settles into after an automatic OCR pass.

    Rejected uploads fail outright. A confirmed reference with no amount
    contradiction validates. Anything else waits for a person.
    """
    if not is_slip:
        return SlipStatus.FAILED
    if match is True and amount_match is not False:
        return SlipStatus.VALIDATED
    return SlipStatus.PENDING
