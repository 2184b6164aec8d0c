"""
Tests for administrator settings.
"""
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.exc import OperationalError

from proofpay.core import events
from proofpay.core.errors import ValidationError
from proofpay.database.repository import ReceiptRepository


class TestAdminSettingsService:
    """Test suite for AdminSettingsService."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_defaults_when_unset(self, test_db: Any, admin_settings: Any) -> None:
        assert await admin_settings.get_confidence_threshold(test_db) == 85
        assert await admin_settings.get_receipts_enabled(test_db) is True
        assert await admin_settings.get_kill_switch(test_db) is False
        assert await admin_settings.get_retention_days(test_db) == 90
        assert await admin_settings.get_qr_single_use(test_db) is False

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_set_and_get(self, test_db: Any, admin_settings: Any) -> None:
        await admin_settings.set_confidence_threshold(test_db, 60)
        await admin_settings.set_receipts_enabled(test_db, False)
        await admin_settings.set_kill_switch(test_db, True)
        await admin_settings.set_qr_single_use(test_db, True)

        assert await admin_settings.get_confidence_threshold(test_db) == 60
        assert await admin_settings.get_receipts_enabled(test_db) is False
        assert await admin_settings.get_kill_switch(test_db) is True
        assert await admin_settings.get_qr_single_use(test_db) is True

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_stored_value_shape(self, test_db: Any, admin_settings: Any) -> None:
        await admin_settings.set_confidence_threshold(test_db, 70)
        await admin_settings.set_kill_switch(test_db, True)

        repo = ReceiptRepository(test_db)
        assert (await repo.get_setting("confidence_threshold")).value == {"threshold": 70}
        assert (await repo.get_setting("kill_switch")).value == {"enabled": True}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_overwrite_setting(self, test_db: Any, admin_settings: Any) -> None:
        await admin_settings.set_confidence_threshold(test_db, 60)
        await admin_settings.set_confidence_threshold(test_db, 95)

        assert await admin_settings.get_confidence_threshold(test_db) == 95

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [-1, 101, "50", True, None])
    async def test_invalid_threshold(self, test_db: Any, admin_settings: Any, value: Any) -> None:
        with pytest.raises(ValidationError):
            await admin_settings.set_confidence_threshold(test_db, value)

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [1, "true", None])
    async def test_toggles_require_bool(
        self, test_db: Any, admin_settings: Any, value: Any
    ) -> None:
        with pytest.raises(ValidationError):
            await admin_settings.set_receipts_enabled(test_db, value)
        with pytest.raises(ValidationError):
            await admin_settings.set_kill_switch(test_db, value)
        with pytest.raises(ValidationError):
            await admin_settings.set_qr_single_use(test_db, value)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retention_policy_event(
        self, test_db: Any, admin_settings: Any, event_sink: Any
    ) -> None:
        """Test policy_updated is emitted only when the value changes."""
        await admin_settings.set_retention_days(test_db, 30, changed_by="ops")
        await admin_settings.set_retention_days(test_db, 30, changed_by="ops")

        assert await admin_settings.get_retention_days(test_db) == 30
        updates = event_sink.of_type(events.POLICY_UPDATED)
        assert len(updates) == 1
        _, subject_id, metadata = updates[0]
        assert subject_id is None
        assert metadata == {
            "policy_type": "receipt_retention_days",
            "old_value": 90,
            "new_value": 30,
            "changed_by": "ops",
        }

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("days", [0, 3651, 12.5, True])
    async def test_invalid_retention(self, test_db: Any, admin_settings: Any, days: Any) -> None:
        with pytest.raises(ValidationError):
            await admin_settings.set_retention_days(test_db, days)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_receipts_available(self, test_db: Any, admin_settings: Any) -> None:
        assert await admin_settings.receipts_available(test_db) is None

        await admin_settings.set_receipts_enabled(test_db, False)
        assert await admin_settings.receipts_available(test_db) == "receipts_disabled"

        await admin_settings.set_kill_switch(test_db, True)
        assert await admin_settings.receipts_available(test_db) == "kill_switch"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unreadable_store_falls_back(
        self, test_db: Any, admin_settings: Any
    ) -> None:
        """Test a failing read returns the configured default."""
        error = OperationalError("SELECT", {}, Exception("no such table: bank_settings"))
        with patch.object(ReceiptRepository, "get_setting", new=AsyncMock(side_effect=error)):
            assert await admin_settings.get_confidence_threshold(test_db) == 85
            assert await admin_settings.get_kill_switch(test_db) is False
