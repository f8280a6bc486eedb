"""Outbound delivery: quiet hours, the SMS gateway and the outbox processor."""
