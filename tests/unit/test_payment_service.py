"""
Unit tests for booking/services/payment_service.py - manual transaction ids.
"""

import re

from booking.services.payment_service import generate_manual_transaction_id

MANUAL_ID = re.compile(r"^MANUAL-(\d+)-([0-9a-z]{9})$")


class TestManualTransactionId:
    def test_format(self):
        transaction_id = generate_manual_transaction_id(1704067200000)

        match = MANUAL_ID.match(transaction_id)
        assert match is not None
        assert match.group(1) == "1704067200000"

    def test_defaults_to_current_time(self):
        match = MANUAL_ID.match(generate_manual_transaction_id())
        assert match is not None
        assert len(match.group(1)) >= 13

    def test_ids_do_not_repeat(self):
        ids = {generate_manual_transaction_id(1704067200000) for _ in range(500)}
        assert len(ids) == 500
