"""Tests for the log processors."""

import pytest
from asgi_correlation_id.context import correlation_id

from app.core.logging import add_correlation_id, mask_sensitive

pytestmark = pytest.mark.unit


def test_sensitive_values_are_masked():
    event = {"event": "webhook_rejected", "stripe_signature": "t=1,v1=abc", "event_id": "evt_1", "secret": ""}

    masked = mask_sensitive(None, "info", event)

    assert masked["stripe_signature"] == "***"
    assert masked["event_id"] == "evt_1"
    # Empty values reveal nothing and are left as-is
    assert masked["secret"] == ""


def test_correlation_id_is_added_inside_a_request():
    token = correlation_id.set("req-123")
    try:
        assert add_correlation_id(None, "info", {"event": "x"})["correlation_id"] == "req-123"
    finally:
        correlation_id.reset(token)


def test_no_correlation_id_outside_a_request():
    assert "correlation_id" not in add_correlation_id(None, "info", {"event": "x"})
