"""Validation orchestrator: OCR -> slip gate -> reference match -> amount reconciliation."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

from slipcheck.core.config import get_settings
from slipcheck.schemas.slip import ConcernCode
from slipcheck.services import slip_rules
from slipcheck.services.ocr import OcrProvider, OcrResult, get_ocr_provider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Concern:
    code: ConcernCode
    severity: str
    blocking: bool
    message: str


@dataclass(frozen=True)
class SlipVerdict:
    is_slip: bool
    classifier_rule: str
    confidence: Optional[float]
    extracted_text: str
    match: Optional[bool] = None
    amount_match: Optional[bool] = None
    detected_reference: Optional[str] = None
    detected_amount: Optional[float] = None
    expected_amount: Optional[float] = None
    reference_distance: Optional[int] = None
    concerns: tuple[Concern, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["concerns"] = [
            {**asdict(concern), "code": concern.code.value} for concern in self.concerns
        ]
        return data

    def evidence(self) -> dict[str, Any]:
        """The slice of the verdict kept in a slip's ``validation_result``."""
        return {
            "is_slip": self.is_slip,
            "classifier_rule": self.classifier_rule,
            "match": self.match,
            "amount_match": self.amount_match,
            "detected_reference": self.detected_reference,
            "detected_amount": self.detected_amount,
            "expected_amount": self.expected_amount,
            "reference_distance": self.reference_distance,
            "concerns": [concern.code.value for concern in self.concerns],
        }


def _concerns(
    *,
    is_slip: bool,
    match: Optional[bool],
    amount_match: Optional[bool],
) -> tuple[Concern, ...]:
    if not is_slip:
        return (
            Concern(
                ConcernCode.NOT_A_SLIP,
                "warning",
                False,
                "This upload does not look like a bank transfer slip. Replace it, retry OCR or request a manual review.",
            ),
        )

    found = []
    if match is None:
        found.append(Concern(ConcernCode.REFERENCE_UNCHECKED, "info", False, "No reference was entered to check."))
    elif match is False:
        found.append(
            Concern(ConcernCode.REFERENCE_MISMATCH, "blocking", True, "The reference was not found on the slip.")
        )

    if amount_match is None:
        found.append(
            Concern(ConcernCode.AMOUNT_UNDETERMINED, "info", False, "The amount could not be checked.")
        )
    elif amount_match is False:
        found.append(
            Concern(
                ConcernCode.AMOUNT_MISMATCH,
                "info",
                False,
                "The amount on the slip differs from the expected amount; staff will review it.",
            )
        )
    return tuple(found)


def evaluate_ocr_result(
    ocr: OcrResult,
    *,
    entered_reference: Optional[str],
    expected_amount: Any = None,
    detected_amount: Any = None,
    min_confidence: float = slip_rules.MIN_SLIP_CONFIDENCE,
    amount_tolerance: float = slip_rules.AMOUNT_TOLERANCE,
) -> SlipVerdict:
    """Turn OCR output into a verdict. Pure; shared by the sync and background paths."""
    text = ocr.text or ""
    expected_value = slip_rules.parse_amount(expected_amount)
    classification = slip_rules.classify_slip(text, ocr.confidence, min_confidence=min_confidence)

    if not classification.is_slip:
        # Noise must never be matched against the entered reference.
        logger.warning("Upload rejected as non-slip rule=%s confidence=%s", classification.rule, ocr.confidence)
        return SlipVerdict(
            is_slip=False,
            classifier_rule=classification.rule,
            confidence=ocr.confidence,
            extracted_text=text,
            expected_amount=expected_value,
            concerns=_concerns(is_slip=False, match=None, amount_match=None),
        )

    detected_reference = slip_rules.detect_reference(text, entered_reference)
    match = slip_rules.reference_matches(detected_reference, entered_reference)

    detected_value = slip_rules.parse_amount(detected_amount)
    if detected_value is None:
        detected_value = slip_rules.detect_amount(text, detected_reference)
    amount_match = slip_rules.amounts_match(detected_value, expected_value, tolerance=amount_tolerance)

    return SlipVerdict(
        is_slip=True,
        classifier_rule=classification.rule,
        confidence=ocr.confidence,
        extracted_text=text,
        match=match,
        amount_match=amount_match,
        detected_reference=detected_reference,
        detected_amount=detected_value,
        expected_amount=expected_value,
        reference_distance=slip_rules.reference_distance(entered_reference, text),
        concerns=_concerns(is_slip=True, match=match, amount_match=amount_match),
    )


class SlipValidator:
    """Runs one validation attempt end to end.

    OCR failures propagate as ``OcrError``: no verdict is produced for a file
    that could not be read.
    """

    def __init__(
        self,
        provider: Optional[OcrProvider] = None,
        *,
        min_confidence: Optional[float] = None,
        amount_tolerance: Optional[float] = None,
    ) -> None:
        settings = get_settings()
        self.provider = provider or get_ocr_provider()
        self.min_confidence = settings.slip_min_confidence if min_confidence is None else min_confidence
        self.amount_tolerance = settings.slip_amount_tolerance if amount_tolerance is None else amount_tolerance

    async def validate(
        self,
        content: bytes,
        *,
        content_type: Optional[str] = None,
        entered_reference: Optional[str] = None,
        expected_amount: Any = None,
        detected_amount: Any = None,
    ) -> SlipVerdict:
        ocr = await self.provider.extract(content, content_type=content_type)
        logger.debug("OCR provider=%s confidence=%s text=%r", ocr.provider, ocr.confidence, ocr.text[:200])

        verdict = evaluate_ocr_result(
            ocr,
            entered_reference=entered_reference,
            expected_amount=expected_amount,
            detected_amount=detected_amount,
            min_confidence=self.min_confidence,
            amount_tolerance=self.amount_tolerance,
        )
        logger.info(
            "Slip verdict is_slip=%s rule=%s match=%s amount_match=%s",
            verdict.is_slip,
            verdict.classifier_rule,
            verdict.match,
            verdict.amount_match,
        )
        return verdict


def get_slip_validator() -> SlipValidator:
    """FastAPI dependency; override in tests to swap the OCR collaborator."""
    return SlipValidator()
