"""
בדיקות לאימות webhooks של Whop — חתימה, timestamp ופענוח payload.

הפונקציות נבדקות ישירות (ללא HTTP); זרימת ה-endpoint המלאה ב-test_webhook_api.
"""
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from app.core.exceptions import AuthenticationException, ErrorCode, ValidationException
from app.core.time_utils import utc_now
from app.domain.services.webhook_ingestor import (
    WebhookIngestor,
    compute_signature,
    extract_membership_id,
    parse_signature_header,
    parse_webhook_payload,
    timing_safe_hex_equal,
    validate_timestamp,
    verify_webhook_signature,
)
from tests.helpers import TEST_WEBHOOK_SECRET, encode, make_payload

NOW = 1_700_000_000.7
BODY = b'{"id":"evt_1","type":"payment_failed","data":{}}'


def _flip_hex_digit(digest: str, index: int = 10) -> str:
    """החלפת ספרת hex אחת בספרה אחרת (לא רק שינוי אותיות גדולות/קטנות)"""
    original = digest[index]
    replacement = "0" if original != "0" else "1"
    return digest[:index] + replacement + digest[index + 1:]


# ============================================================================
# פורמט ה-header
# ============================================================================


class TestParseSignatureHeader:

    @pytest.mark.unit
    @pytest.mark.parametrize("header", [
        "sha256=abc123",
        "v1,abc123",
        "abc123",
        "  sha256=abc123  ",
    ])
    def test_supported_formats(self, header: str) -> None:
        assert parse_signature_header(header) == "abc123"

    @pytest.mark.unit
    @pytest.mark.parametrize("header", [
        "sha512=abc123",
        "md5=abc123",
        "sha1=abc123",
        "sha256=not-hex",
        "v2,abc123",
        "t=123,v1=abc",
        "",
    ])
    def test_unsupported_formats_rejected(self, header: str) -> None:
        assert parse_signature_header(header) is None


class TestTimingSafeHexEqual:

    @pytest.mark.unit
    def test_equal_digests(self) -> None:
        digest = compute_signature(BODY, TEST_WEBHOOK_SECRET)
        assert timing_safe_hex_equal(digest, digest)

    @pytest.mark.unit
    def test_case_insensitive(self) -> None:
        digest = compute_signature(BODY, TEST_WEBHOOK_SECRET)
        assert timing_safe_hex_equal(digest, digest.upper())

    @pytest.mark.unit
    def test_single_digit_difference(self) -> None:
        digest = compute_signature(BODY, TEST_WEBHOOK_SECRET)
        assert not timing_safe_hex_equal(digest, _flip_hex_digit(digest))

    @pytest.mark.unit
    @pytest.mark.parametrize("other", ["", "abc", "zz" * 32])
    def test_length_or_charset_mismatch(self, other: str) -> None:
        digest = compute_signature(BODY, TEST_WEBHOOK_SECRET)
        assert not timing_safe_hex_equal(digest, other)

    @pytest.mark.unit
    def test_odd_length_hex(self) -> None:
        assert not timing_safe_hex_equal("abc", "abc")


# ============================================================================
# חלון timestamp
# ============================================================================


class TestValidateTimestamp:

    @pytest.mark.unit
    @pytest.mark.parametrize("offset", [0, -60, 60])
    def test_within_window(self, offset: int) -> None:
        """הגבול עצמו (60 שניות) עדיין תקין, בעבר ובעתיד"""
        ts = str(int(NOW) + offset)
        assert validate_timestamp(ts, now=NOW, tolerance_seconds=60, require=True) is None

    @pytest.mark.unit
    @pytest.mark.parametrize("offset", [-61, 61, -3600])
    def test_outside_window(self, offset: int) -> None:
        ts = str(int(NOW) + offset)
        error = validate_timestamp(ts, now=NOW, tolerance_seconds=60, require=True)
        assert error is not None
        assert "outside allowed window" in error

    @pytest.mark.unit
    def test_missing_required_in_production(self) -> None:
        error = validate_timestamp(None, now=NOW, require=True)
        assert error == "Missing X-Whop-Timestamp header in production"

    @pytest.mark.unit
    def test_missing_allowed_in_development(self) -> None:
        assert validate_timestamp(None, now=NOW, require=False) is None

    @pytest.mark.unit
    @pytest.mark.parametrize("value", ["abc", "-5", "nan", "inf"])
    def test_malformed(self, value: str) -> None:
        error = validate_timestamp(value, now=NOW, require=True)
        assert error is not None
        assert "malformed" in error


# ============================================================================
# אימות מלא
# ============================================================================


class TestVerifyWebhookSignature:

    @pytest.mark.unit
    @pytest.mark.parametrize("template", ["sha256={}", "v1,{}", "{}"])
    def test_valid_signature_all_formats(self, template: str) -> None:
        digest = compute_signature(BODY, TEST_WEBHOOK_SECRET)
        valid, errors = verify_webhook_signature(
            BODY, template.format(digest), TEST_WEBHOOK_SECRET, str(int(NOW)), now=NOW,
        )
        assert valid
        assert errors == []

    @pytest.mark.unit
    def test_flipped_digit_rejected(self) -> None:
        digest = _flip_hex_digit(compute_signature(BODY, TEST_WEBHOOK_SECRET))
        valid, errors = verify_webhook_signature(
            BODY, f"sha256={digest}", TEST_WEBHOOK_SECRET, str(int(NOW)), now=NOW,
        )
        assert not valid
        assert errors == ["Signature verification failed"]

    @pytest.mark.unit
    def test_wrong_secret_rejected(self) -> None:
        digest = compute_signature(BODY, "other-secret")
        valid, _ = verify_webhook_signature(
            BODY, digest, TEST_WEBHOOK_SECRET, str(int(NOW)), now=NOW,
        )
        assert not valid

    @pytest.mark.unit
    def test_body_tampering_rejected(self) -> None:
        digest = compute_signature(BODY, TEST_WEBHOOK_SECRET)
        valid, _ = verify_webhook_signature(
            BODY + b" ", digest, TEST_WEBHOOK_SECRET, str(int(NOW)), now=NOW,
        )
        assert not valid

    @pytest.mark.unit
    def test_collects_every_error(self) -> None:
        """timestamp ישן וחתימה בפורמט לא נתמך — שתי השגיאות מדווחות"""
        valid, errors = verify_webhook_signature(
            BODY, "sha512=abc", TEST_WEBHOOK_SECRET, str(int(NOW) - 3600), now=NOW,
        )
        assert not valid
        assert any("outside allowed window" in e for e in errors)
        assert "Unsupported signature format" in errors
        assert "Signature verification failed" in errors


class TestIngestorVerify:

    @pytest.mark.unit
    def test_missing_signature(self) -> None:
        ingestor = WebhookIngestor(MagicMock(), secret=TEST_WEBHOOK_SECRET, clock=lambda: NOW)
        with pytest.raises(AuthenticationException) as exc_info:
            ingestor.verify(BODY, None, str(int(NOW)))
        assert exc_info.value.message == "Missing signature"
        assert exc_info.value.status_code == 401

    @pytest.mark.unit
    def test_stale_timestamp_error_code(self) -> None:
        ingestor = WebhookIngestor(MagicMock(), secret=TEST_WEBHOOK_SECRET, clock=lambda: NOW)
        digest = compute_signature(BODY, TEST_WEBHOOK_SECRET)
        with pytest.raises(AuthenticationException) as exc_info:
            ingestor.verify(BODY, digest, str(int(NOW) - 600))
        assert exc_info.value.message == "Invalid signature"
        assert exc_info.value.error_code == ErrorCode.STALE_TIMESTAMP

    @pytest.mark.unit
    def test_bad_signature_error_code(self) -> None:
        ingestor = WebhookIngestor(MagicMock(), secret=TEST_WEBHOOK_SECRET, clock=lambda: NOW)
        with pytest.raises(AuthenticationException) as exc_info:
            ingestor.verify(BODY, "sha256=" + "0" * 64, str(int(NOW)))
        assert exc_info.value.error_code == ErrorCode.INVALID_SIGNATURE

    @pytest.mark.unit
    def test_valid_passes(self) -> None:
        ingestor = WebhookIngestor(MagicMock(), secret=TEST_WEBHOOK_SECRET, clock=lambda: NOW)
        digest = compute_signature(BODY, TEST_WEBHOOK_SECRET)
        ingestor.verify(BODY, f"v1,{digest}", str(int(NOW)))


# ============================================================================
# פענוח payload
# ============================================================================


class TestParseWebhookPayload:

    @pytest.mark.unit
    def test_invalid_json(self) -> None:
        with pytest.raises(ValidationException) as exc_info:
            parse_webhook_payload(b"{not json")
        assert exc_info.value.message == "Invalid JSON"
        assert exc_info.value.error_code == ErrorCode.INVALID_PAYLOAD

    @pytest.mark.unit
    def test_non_object_json(self) -> None:
        with pytest.raises(ValidationException):
            parse_webhook_payload(b"[1, 2, 3]")

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [
        {"type": "payment_failed"},
        {"id": "evt_1"},
        {"id": "", "type": "payment_failed"},
    ])
    def test_missing_required_fields(self, raw: dict) -> None:
        with pytest.raises(ValidationException) as exc_info:
            parse_webhook_payload(encode(raw))
        assert exc_info.value.message == "Missing required fields"

    @pytest.mark.unit
    def test_whop_event_id_alias(self) -> None:
        payload = parse_webhook_payload(encode({"whop_event_id": "evt_9", "type": "payment_failed"}))
        assert payload.event_id == "evt_9"
        assert payload.data == {}

    @pytest.mark.unit
    def test_created_at_becomes_naive_utc(self) -> None:
        raw = make_payload(created_at="2024-03-01T12:00:00+02:00")
        payload = parse_webhook_payload(encode(raw))
        assert payload.occurred_at == datetime(2024, 3, 1, 10, 0, 0)
        assert payload.occurred_at.tzinfo is None

    @pytest.mark.unit
    def test_zulu_created_at(self) -> None:
        raw = make_payload(created_at="2024-03-01T12:00:00Z")
        assert parse_webhook_payload(encode(raw)).occurred_at == datetime(2024, 3, 1, 12, 0, 0)

    @pytest.mark.unit
    def test_unparseable_created_at_falls_back_to_now(self) -> None:
        raw = make_payload(created_at="yesterday")
        before = utc_now() - timedelta(seconds=1)
        payload = parse_webhook_payload(encode(raw))
        assert payload.occurred_at >= before


class TestExtractMembershipId:

    @pytest.mark.unit
    def test_flat_membership_id(self) -> None:
        assert extract_membership_id("payment_failed", {"membership_id": "mem_1"}) == "mem_1"

    @pytest.mark.unit
    def test_nested_membership(self) -> None:
        assert extract_membership_id("payment_failed", {"membership": {"id": "mem_2"}}) == "mem_2"

    @pytest.mark.unit
    def test_membership_event_uses_data_id(self) -> None:
        assert extract_membership_id("membership_went_valid", {"id": "mem_3"}) == "mem_3"

    @pytest.mark.unit
    def test_payment_event_ignores_data_id(self) -> None:
        """ב-payment_* ה-id של data הוא ה-id של התשלום"""
        assert extract_membership_id("payment_succeeded", {"id": "pay_1"}) == "unknown"
