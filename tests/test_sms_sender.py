"""Tests for the SMS transport in front of Twilio."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from autonomy.errors import TransportError
from autonomy.services.sms_sender import SmsSender, is_valid_e164
from autonomy.stores.memory import InMemoryOptOutStore, InMemoryRateLimitStore

PHONE = "+15551234567"


@pytest.fixture
def opt_outs():
    return InMemoryOptOutStore()


@pytest.fixture
def rate_limits(clock):
    return InMemoryRateLimitStore(clock=clock)


def _sender(opt_outs, rate_limits, client=None, **kwargs) -> SmsSender:
    return SmsSender(opt_outs, rate_limits, client=client, **kwargs)


class TestE164:
    @pytest.mark.parametrize("phone", ["+15551234567", "+447911123456", "+3519123456"])
    def test_valid(self, phone):
        assert is_valid_e164(phone)

    @pytest.mark.parametrize("phone", ["5551234567", "+0123456789", "+1 555 123 4567", "", None])
    def test_invalid(self, phone):
        assert not is_valid_e164(phone)


class TestSimulator:
    def test_reports_simulated_success(self, opt_outs, rate_limits):
        sender = _sender(opt_outs, rate_limits)
        result = sender.send(PHONE, "hello", "t1")
        assert sender.simulated
        assert result.success
        assert result.simulated
        assert result.provider_message_id.startswith("SIM_")


class TestGuards:
    def test_invalid_number(self, opt_outs, rate_limits):
        result = _sender(opt_outs, rate_limits).send("555-1234", "hello")
        assert not result.success
        assert result.error == "invalid_phone_number"

    def test_opted_out(self, opt_outs, rate_limits):
        opt_outs.opt_out(PHONE, "t1")
        client = MagicMock()
        result = _sender(opt_outs, rate_limits, client).send(PHONE, "hello", "t1")
        assert result.opted_out
        client.send_message.assert_not_called()

    def test_rate_limit_window(self, opt_outs, rate_limits, clock):
        sender = _sender(opt_outs, rate_limits, rate_limit_max=2, rate_limit_window=timedelta(minutes=60))
        assert sender.send(PHONE, "1").success
        assert sender.send(PHONE, "2").success
        third = sender.send(PHONE, "3")
        assert third.rate_limited
        assert third.error == "rate_limited"

        clock.advance(minutes=61)
        assert sender.send(PHONE, "4").success


class TestTwilioErrors:
    def _failing(self, opt_outs, rate_limits, exc):
        client = MagicMock()
        client.send_message.side_effect = exc
        return _sender(opt_outs, rate_limits, client)

    def test_success_returns_sid(self, opt_outs, rate_limits):
        client = MagicMock()
        client.send_message.return_value = "SMabc123"
        result = _sender(opt_outs, rate_limits, client).send(PHONE, "hello")
        assert result.success
        assert result.provider_message_id == "SMabc123"
        assert not result.simulated

    def test_unsubscribed_code_maps_to_opt_out(self, opt_outs, rate_limits):
        sender = self._failing(opt_outs, rate_limits, TransportError("x", 400, 21610))
        result = sender.send(PHONE, "hello")
        assert result.opted_out
        assert result.error_code == 21610

    @pytest.mark.parametrize("status,code", [(429, None), (400, 20429)])
    def test_throttling_maps_to_rate_limited(self, opt_outs, rate_limits, status, code):
        result = self._failing(opt_outs, rate_limits, TransportError("x", status, code)).send(PHONE, "hello")
        assert result.rate_limited

    def test_other_errors_are_plain_failures(self, opt_outs, rate_limits):
        sender = self._failing(opt_outs, rate_limits, TransportError("Twilio error: invalid To", 400, 21211))
        result = sender.send(PHONE, "hello")
        assert not result.success
        assert not result.opted_out
        assert not result.rate_limited
        assert result.error == "Twilio error: invalid To"
        assert result.error_code == 21211
