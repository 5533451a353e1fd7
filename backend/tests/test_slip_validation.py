import pytest

from slipcheck.services.ocr import MockOcrProvider, OcrError, OcrProvider, OcrResult
from slipcheck.services.slip_validation import SlipValidator

SLIP_TEXT = "Bank Transfer\nReference: TXN998877\nAmount: MVR 1,250.00"


class _FailingProvider(OcrProvider):
    name = "failing"

    async def extract(self, content, *, content_type=None):
        raise OcrError("OCR service call failed: ConnectError")


class _FixedProvider(OcrProvider):
    name = "fixed"

    def __init__(self, text, confidence):
        self._result = OcrResult(text=text, confidence=confidence, provider=self.name)

    async def extract(self, content, *, content_type=None):
        return self._result


@pytest.mark.asyncio
async def test_validator_happy_path_with_mock_ocr():
    validator = SlipValidator(MockOcrProvider(confidence=85), min_confidence=60, amount_tolerance=1.0)
    verdict = await validator.validate(
        SLIP_TEXT.encode("utf-8"),
        content_type="image/png",
        entered_reference="998877",
        expected_amount="1250",
    )
    assert verdict.is_slip is True
    assert verdict.match is True
    assert verdict.amount_match is True
    assert verdict.confidence == 85
    assert verdict.extracted_text == SLIP_TEXT
    assert verdict.reference_distance == 0


@pytest.mark.asyncio
async def test_validator_propagates_ocr_failure():
    validator = SlipValidator(_FailingProvider())
    with pytest.raises(OcrError):
        await validator.validate(b"anything", content_type="image/png", entered_reference="998877")


@pytest.mark.asyncio
async def test_validator_uses_configured_confidence_gate(monkeypatch):
    monkeypatch.setenv("SLIP_MIN_CONFIDENCE", "90")
    validator = SlipValidator(_FixedProvider(SLIP_TEXT, 85))
    verdict = await validator.validate(b"", entered_reference="998877", expected_amount="1250")
    assert verdict.is_slip is False
    assert verdict.classifier_rule == "low_confidence"
    assert verdict.match is None


@pytest.mark.asyncio
async def test_validator_uses_configured_tolerance(monkeypatch):
    monkeypatch.setenv("SLIP_AMOUNT_TOLERANCE", "0")
    validator = SlipValidator(_FixedProvider(SLIP_TEXT, 85))
    verdict = await validator.validate(b"", entered_reference="998877", expected_amount="1249")
    assert verdict.amount_match is False


@pytest.mark.asyncio
async def test_verdict_serialization():
    validator = SlipValidator(_FixedProvider("Grocery receipt\nThank you for shopping", 90))
    verdict = await validator.validate(b"", entered_reference="998877")
    data = verdict.to_dict()
    assert data["is_slip"] is False
    assert data["concerns"][0]["code"] == "NOT_A_SLIP"
    assert data["concerns"][0]["blocking"] is False

    evidence = verdict.evidence()
    assert evidence["concerns"] == ["NOT_A_SLIP"]
    assert "extracted_text" not in evidence
