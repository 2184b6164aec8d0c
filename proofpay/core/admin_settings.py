"""
Administrative settings.

Key/value settings stored in ``bank_settings``. Every read falls back to
the configured default when the key is unset or the store cannot be
read, so a missing row never blocks a receipt or token operation.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from proofpay.config import Settings, get_settings
from proofpay.core import events
from proofpay.core.errors import ValidationError
from proofpay.core.events import EventSink, LoggingEventSink, record_event
from proofpay.database.repository import ReceiptRepository

logger = structlog.get_logger(__name__)

CONFIDENCE_THRESHOLD = "confidence_threshold"
RECEIPTS_ENABLED = "receipts_enabled"
KILL_SWITCH = "kill_switch"
RETENTION_DAYS = "receipt_retention_days"
QR_SINGLE_USE = "qr_single_use"

_DESCRIPTIONS = {
    CONFIDENCE_THRESHOLD: (
        "Minimum confidence score (0-100) required for receipts to be shown "
        "to customers. Receipts below this threshold are hidden."
    ),
    RECEIPTS_ENABLED: (
        "Master toggle to enable/disable receipt viewing. When disabled, all "
        "receipts are hidden from customers regardless of confidence threshold."
    ),
    KILL_SWITCH: "Master kill switch to disable all receipt functionality",
    RETENTION_DAYS: "Number of days to retain receipt data.",
    QR_SINGLE_USE: "Whether newly issued share tokens are single-use.",
}


class AdminSettingsService:
    """Read-through access to administrator-configured settings."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        event_sink: Optional[EventSink] = None,
    ):
        self.settings = settings or get_settings()
        self.event_sink = event_sink or LoggingEventSink()

    async def _read(self, db: AsyncSession, key: str, field: str) -> Any:
        """Stored ``value[field]`` for ``key``, or None when unset or unreadable."""
        try:
            setting = await ReceiptRepository(db).get_setting(key)
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning("setting_read_failed", key=key, error=str(e))
            return None
        if setting is None or not isinstance(setting.value, dict):
            return None
        return setting.value.get(field)

    async def _write(self, db: AsyncSession, key: str, value: Dict[str, Any]) -> None:
        await ReceiptRepository(db).upsert_setting(key, value, _DESCRIPTIONS.get(key))
        logger.info("setting_updated", key=key, value=value)

    async def get_confidence_threshold(self, db: AsyncSession) -> float:
        """Stored threshold, unrounded."""
        value = await self._read(db, CONFIDENCE_THRESHOLD, "threshold")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return self.settings.confidence_threshold_default
        return value

    async def set_confidence_threshold(self, db: AsyncSession, threshold: Any) -> float:
        if (
            isinstance(threshold, bool)
            or not isinstance(threshold, (int, float))
            or not 0 <= threshold <= 100
        ):
            raise ValidationError(
                f"Invalid confidence threshold: {threshold!r}",
                user_message="threshold must be a number between 0 and 100",
            )
        await self._write(db, CONFIDENCE_THRESHOLD, {"threshold": threshold})
        return threshold

    async def get_receipts_enabled(self, db: AsyncSession) -> bool:
        value = await self._read(db, RECEIPTS_ENABLED, "enabled")
        if not isinstance(value, bool):
            return self.settings.receipts_enabled_default
        return value

    async def set_receipts_enabled(self, db: AsyncSession, enabled: Any) -> bool:
        _require_bool(enabled, "enabled")
        await self._write(db, RECEIPTS_ENABLED, {"enabled": enabled})
        return enabled

    async def get_kill_switch(self, db: AsyncSession) -> bool:
        value = await self._read(db, KILL_SWITCH, "enabled")
        if not isinstance(value, bool):
            return self.settings.kill_switch_default
        return value

    async def set_kill_switch(self, db: AsyncSession, enabled: Any) -> bool:
        _require_bool(enabled, "enabled")
        await self._write(db, KILL_SWITCH, {"enabled": enabled})
        if enabled:
            logger.warning("kill_switch_enabled")
        return enabled

    async def get_retention_days(self, db: AsyncSession) -> int:
        value = await self._read(db, RETENTION_DAYS, "days")
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            return self.settings.retention_days_default
        return value

    async def set_retention_days(
        self, db: AsyncSession, days: Any, changed_by: Optional[str] = None
    ) -> int:
        """
        Store the receipt retention period.

        Emits ``policy_updated`` when the value actually changes. Retention
        is only recorded here; nothing deletes receipts.
        """
        if isinstance(days, bool) or not isinstance(days, int) or not 1 <= days <= 3650:
            raise ValidationError(
                f"Invalid retention days: {days!r}",
                user_message="days must be a number between 1 and 3650",
            )
        old_value = await self.get_retention_days(db)
        await self._write(db, RETENTION_DAYS, {"days": days})
        if old_value != days:
            await record_event(
                self.event_sink,
                events.POLICY_UPDATED,
                None,
                policy_type=RETENTION_DAYS,
                old_value=old_value,
                new_value=days,
                changed_by=changed_by or "unknown",
            )
        return days

    async def get_qr_single_use(self, db: AsyncSession) -> bool:
        value = await self._read(db, QR_SINGLE_USE, "enabled")
        if not isinstance(value, bool):
            return self.settings.qr_single_use_default
        return value

    async def set_qr_single_use(self, db: AsyncSession, enabled: Any) -> bool:
        _require_bool(enabled, "enabled")
        await self._write(db, QR_SINGLE_USE, {"enabled": enabled})
        return enabled

    async def receipts_available(self, db: AsyncSession) -> Optional[str]:
        """Reason receipts are switched off, or None when they are available."""
        if await self.get_kill_switch(db):
            return "kill_switch"
        if not await self.get_receipts_enabled(db):
            return "receipts_disabled"
        return None


def _require_bool(value: Any, name: str) -> None:
    if not isinstance(value, bool):
        raise ValidationError(
            f"Invalid {name}: {value!r}", user_message=f"{name} must be a boolean"
        )
