"""Tests for PII redaction and the audit logger."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

from autonomy.audit import REDACTED, AuditLogger, InMemoryAuditSink, mask, redact_pii
from autonomy.domain.models import OutboxStatus, TenantConfig


class TestRedactPii:
    def test_known_fields_are_redacted(self):
        result = redact_pii({
            "client_email": "a@b.com",
            "client_phone": "+15551234567",
            "reference_code": "APT-1",
        })
        assert result == {
            "client_email": REDACTED,
            "client_phone": REDACTED,
            "reference_code": "APT-1",
        }

    def test_pattern_matches_unknown_keys(self):
        result = redact_pii({"backup_email_address": "x@y.z", "api_secret_key": "s3cr3t"})
        assert result["backup_email_address"] == REDACTED
        assert result["api_secret_key"] == REDACTED

    def test_pattern_is_case_insensitive(self):
        assert redact_pii({"PrimaryPhone": "+1555"})["PrimaryPhone"] == REDACTED

    def test_nested_structures(self):
        result = redact_pii({
            "appointment": {"client_name": "Jane", "service": "Cleaning"},
            "contacts": [{"email": "a@b.com", "role": "owner"}],
        })
        assert result["appointment"] == {"client_name": REDACTED, "service": "Cleaning"}
        assert result["contacts"] == [{"email": REDACTED, "role": "owner"}]

    def test_none_and_non_mapping_yield_empty_dict(self):
        assert redact_pii(None) == {}
        assert redact_pii("client_email=a@b.com") == {}
        assert redact_pii(["a", "b"]) == {}

    def test_pydantic_models_are_dumped_first(self):
        result = redact_pii(TenantConfig(id="t1", name="Acme Clinic"))
        assert result["id"] == "t1"
        assert result["name"] == REDACTED

    def test_enums_and_datetimes_become_plain_values(self):
        when = datetime(2026, 3, 10, 15, 0, tzinfo=UTC)
        result = redact_pii({"status": OutboxStatus.SENT, "at": when})
        assert result == {"status": "sent", "at": when.isoformat()}

    def test_input_is_not_mutated(self):
        payload = {"client_email": "a@b.com", "nested": {"phone": "+1"}}
        redact_pii(payload)
        assert payload == {"client_email": "a@b.com", "nested": {"phone": "+1"}}


class TestMask:
    def test_keeps_last_four(self):
        assert mask("SM1234567890abcd") == "…abcd"

    def test_empty_values(self):
        assert mask(None) == "none"
        assert mask("") == "none"


class TestAuditLogger:
    def test_writes_redacted_entry(self):
        sink = InMemoryAuditSink()
        AuditLogger(sink).log(
            tenant_id="t1",
            event_type="notification.queued",
            entity_type="notification",
            entity_id="job-1",
            actor="job_runner",
            payload={"client_email": "a@b.com", "type": "send_confirmation"},
        )
        [entry] = sink.entries
        assert entry.event_type == "notification.queued"
        assert entry.entity_id == "job-1"
        assert entry.payload == {"client_email": REDACTED, "type": "send_confirmation"}

    def test_sink_failure_never_propagates(self):
        sink = MagicMock()
        sink.log.side_effect = RuntimeError("database down")
        # Must not raise
        AuditLogger(sink).log(
            tenant_id="t1", event_type="x", entity_type="y", actor="test",
        )
        sink.log.assert_called_once()

    def test_by_type_filters_entries(self):
        sink = InMemoryAuditSink()
        logger = AuditLogger(sink)
        logger.log(tenant_id="t1", event_type="a", entity_type="e", actor="test")
        logger.log(tenant_id="t1", event_type="b", entity_type="e", actor="test")
        logger.log(tenant_id="t1", event_type="a", entity_type="e", actor="test")
        assert len(sink.by_type("a")) == 2
