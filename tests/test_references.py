from datetime import UTC, datetime

import pytest

from autorenew.services.billing.exceptions import ReferenceFormatError
from autorenew.services.billing.references import (
    PaymentLinkReference,
    RecurringReference,
    is_recurring_reference,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
NOW_MS = int(NOW.timestamp() * 1000)


class TestRecurringReference:
    def test_wire_format(self):
        ref = RecurringReference.new("basic", "573001234567", now=NOW)
        assert ref.to_wire() == f"monedita_recurring_basic_573001234567_{NOW_MS}"
        assert str(ref) == ref.to_wire()

    def test_parse_recovers_fields(self):
        ref = RecurringReference.parse(f"monedita_recurring_premium_573001234567_{NOW_MS}")
        assert ref.plan_id == "premium"
        assert ref.subscriber_id == "573001234567"
        assert ref.timestamp_ms == NOW_MS

    def test_subscriber_id_may_contain_separator(self):
        raw = RecurringReference.new("basic", "wa_573001234567", now=NOW).to_wire()
        parsed = RecurringReference.parse(raw)
        assert parsed.subscriber_id == "wa_573001234567"
        assert parsed.plan_id == "basic"

    def test_plan_id_with_separator_rejected(self):
        with pytest.raises(ReferenceFormatError):
            RecurringReference.new("basic_plus", "573001234567", now=NOW)

    @pytest.mark.parametrize(
        "raw",
        [
            None,
            "",
            "garbage",
            f"monedita_basic_573001234567_{NOW_MS}",
            f"otherapp_recurring_basic_573001234567_{NOW_MS}",
            "monedita_recurring_basic_573001234567_notanumber",
            f"monedita_recurring_basic_{NOW_MS}",
            f"monedita_recurring__573001234567_{NOW_MS}",
        ],
    )
    def test_malformed_references_raise(self, raw):
        with pytest.raises(ReferenceFormatError):
            RecurringReference.parse(raw)

    def test_reference_format_error_is_value_error(self):
        with pytest.raises(ValueError):
            RecurringReference.parse("nope")


def test_payment_link_reference_has_no_recurring_marker():
    raw = PaymentLinkReference.new("premium", "573001234567", now=NOW).to_wire()
    assert raw == f"monedita_premium_573001234567_{NOW_MS}"
    assert not is_recurring_reference(raw)


def test_is_recurring_reference():
    assert is_recurring_reference(f"monedita_recurring_basic_1_{NOW_MS}")
    assert not is_recurring_reference(None)
