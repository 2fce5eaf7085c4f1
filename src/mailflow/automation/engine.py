"""Automation email scheduler and tracker.

Owns the tracking-record lifecycle: decides whether an automation may be
scheduled for a customer, when it is due, and what happens after each
delivery attempt.

Scheduling pipeline (``schedule_automation_email``):
1. Reject unknown or disabled automation types
2. Reject customers outside the automation's segment
3. Reject customers inside the frequency-cap window
4. Store a pending tracking record due at now + delay
5. Zero-delay automations are processed inline before returning

Processing pipeline (``process_scheduled_email`` / ``tick``):
1. Skip records that are missing, not pending, or not yet due
2. Claim the record (pending -> in_flight) so overlapping sweeps cannot double-send
3. Defer to tomorrow's deferral hour when the daily quota is spent
4. Render, dispatch through the provider chain
5. sent, or retry in 2**(attempts-1) hours, or failed once attempts run out

Usage:
    from mailflow.automation.engine import AutomationEngine

    engine = AutomationEngine(config.automations, store, dispatcher)
    result = await engine.trigger_welcome_email(customer)
    sweep = await engine.process_scheduled_emails()
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta, tzinfo
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from mailflow.automation import frequency, segment
from mailflow.automation.models import CustomerSnapshot, Priority, TrackingRecord, TrackingStatus
from mailflow.automation.quota import DailyQuota, DailyUsage
from mailflow.core.clock import Clock, system_clock
from mailflow.core.errors import DeliveryError
from mailflow.core.logging import get_logger, mask_email, set_correlation_id
from mailflow.delivery.providers import EmailPayload
from mailflow.delivery.templates import PlainTextRenderer
from mailflow.marketing.contacts import NullContactDirectory

if TYPE_CHECKING:
    from mailflow.automation.store import TrackingStore
    from mailflow.config_schema import AppConfig, AutomationConfig
    from mailflow.delivery.dispatcher import DeliveryDispatcher
    from mailflow.delivery.templates import TemplateRenderer
    from mailflow.marketing.contacts import ContactDirectory

logger = get_logger(__name__)

# Scheduling rejection reasons
REASON_DISABLED = "disabled"
REASON_SEGMENT_MISMATCH = "segment_mismatch"
REASON_FREQUENCY_CAPPED = "frequency_capped"

DAILY_USAGE_STATE_KEY = "daily_usage"

# Inactivity (days) at which re-engagement switches to the 90-day automation
REENGAGEMENT_LONG_DAYS = 90


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class ProcessOutcome(StrEnum):
    """What happened to one record when it was processed."""

    SENT = "sent"
    RETRYING = "retrying"
    QUOTA_DEFERRED = "quota_deferred"
    FAILED = "failed"
    NOT_DUE = "not_due"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class ScheduleResult:
    success: bool
    tracking_id: str | None = None
    reason: str | None = None


@dataclass
class SweepResult:
    """Tally of one sweep pass.

    ``skipped`` covers retry deferrals, quota deferrals and records another
    worker claimed first.
    """

    sweep_id: str
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    duration_ms: int = 0


@dataclass
class TypeBreakdown:
    scheduled: int = 0
    sent: int = 0
    failed: int = 0


@dataclass
class AutomationStats:
    """Operational snapshot of the tracking store and quota."""

    daily_usage: DailyUsage
    pending_count: int = 0
    total_scheduled: int = 0
    success_rate: float = 0.0
    per_type_breakdown: dict[str, TypeBreakdown] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "daily_usage": {
                "date": self.daily_usage.date,
                "count": self.daily_usage.count,
                "limit": self.daily_usage.limit,
            },
            "pending_count": self.pending_count,
            "total_scheduled": self.total_scheduled,
            "success_rate": self.success_rate,
            "per_type_breakdown": {
                name: {"scheduled": b.scheduled, "sent": b.sent, "failed": b.failed}
                for name, b in self.per_type_breakdown.items()
            },
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class AutomationEngine:
    """Schedule, gate, deliver and track automation emails.

    One instance per process. Everything time-dependent reads the injected
    clock, so tests drive it with ``FrozenClock``.
    """

    def __init__(
        self,
        automations: dict[str, AutomationConfig],
        store: TrackingStore,
        dispatcher: DeliveryDispatcher,
        renderer: TemplateRenderer | None = None,
        contacts: ContactDirectory | None = None,
        quota: DailyQuota | None = None,
        clock: Clock | None = None,
        tz: tzinfo = UTC,
        deferral_hour: int = 9,
    ) -> None:
        self._automations = dict(automations)
        self._store = store
        self._dispatcher = dispatcher
        self._renderer = renderer or PlainTextRenderer()
        self._contacts = contacts or NullContactDirectory()
        self._quota = quota or DailyQuota()
        self._clock = clock or system_clock(tz)
        self._tz = tz
        self._deferral_hour = deferral_hour

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        store: TrackingStore,
        dispatcher: DeliveryDispatcher,
        **kwargs: Any,
    ) -> AutomationEngine:
        """Build an engine from the validated app config."""
        kwargs.setdefault("quota", DailyQuota(limit=config.quota.daily_limit))
        return cls(
            automations=config.automations,
            store=store,
            dispatcher=dispatcher,
            tz=config.tz,
            deferral_hour=config.quota.deferral_hour,
            **kwargs,
        )

    @property
    def store(self) -> TrackingStore:
        return self._store

    def _today(self, now: datetime) -> date:
        return now.astimezone(self._tz).date()

    def next_deferral_time(self, now: datetime) -> datetime:
        """Tomorrow at the deferral hour, in the engine's timezone."""
        local = now.astimezone(self._tz) + timedelta(days=1)
        return local.replace(hour=self._deferral_hour, minute=0, second=0, microsecond=0)

    async def restore_state(self) -> None:
        """Recover state left by a previous process.

        Records a previous process claimed but never settled go back to pending,
        then the persisted daily quota counter is reloaded.
        """
        released = await self._store.release_in_flight()
        if released:
            logger.warning("in_flight_records_released", count=released)

        raw = await self._store.get_state(DAILY_USAGE_STATE_KEY)
        if not raw:
            return
        try:
            day, count = raw.split(":", 1)
            self._quota.restore(date.fromisoformat(day), int(count))
        except ValueError:
            logger.warning("daily_usage_state_invalid", value=raw)
            return
        logger.info("daily_usage_restored", date=day, count=int(count))

    def apply_config(self, config: AppConfig) -> None:
        """Swap in reloaded automation settings and the quota limit.

        Records already scheduled keep their scheduled_at; new delays and caps
        apply from the next schedule or attempt.
        """
        self._automations = dict(config.automations)
        self._quota.limit = config.quota.daily_limit
        self._deferral_hour = config.quota.deferral_hour
        logger.info(
            "engine_config_applied",
            automations_enabled=sum(1 for a in config.automations.values() if a.enabled),
            daily_limit=config.quota.daily_limit,
        )

    # =========================================================================
    # Scheduling
    # =========================================================================

    async def schedule_automation_email(
        self,
        automation_type: str,
        customer: CustomerSnapshot,
        data: dict[str, Any] | None = None,
        priority: Priority = "medium",
    ) -> ScheduleResult:
        """Create a tracking record for an automation, if the customer qualifies.

        Args:
            automation_type: Automation type name (e.g. "WELCOME_SERIES")
            customer: Customer snapshot at trigger time
            data: Event payload (order, cart items, ...)
            priority: Priority hint stored with the record

        Returns:
            ScheduleResult; rejections carry a reason and create no record

        Raises:
            DeliveryError: A zero-delay automation failed its inline send and
                has no attempts left
        """
        config = self._automations.get(automation_type)
        if config is None or not config.enabled:
            logger.info(
                "automation_rejected",
                automation_type=automation_type,
                reason=REASON_DISABLED,
            )
            return ScheduleResult(success=False, reason=REASON_DISABLED)

        if not segment.matches(customer, config.segment_conditions):
            logger.info(
                "automation_rejected",
                automation_type=automation_type,
                email=mask_email(customer.email),
                reason=REASON_SEGMENT_MISMATCH,
            )
            return ScheduleResult(success=False, reason=REASON_SEGMENT_MISMATCH)

        now = self._clock()
        if config.frequency_cap > timedelta(0):
            history = await self._store.scan(
                email=customer.email,
                automation_type=automation_type,
                status=TrackingStatus.SENT,
            )
            if not frequency.within_limit(
                customer.email, automation_type, config.frequency_cap, history, now
            ):
                logger.info(
                    "automation_rejected",
                    automation_type=automation_type,
                    email=mask_email(customer.email),
                    reason=REASON_FREQUENCY_CAPPED,
                )
                return ScheduleResult(success=False, reason=REASON_FREQUENCY_CAPPED)

        record = TrackingRecord(
            id=f"{automation_type}_{uuid.uuid4().hex}",
            customer_email=customer.email,
            automation_type=automation_type,
            scheduled_at=now + config.delay,
            metadata={"customer": customer.to_dict(), "data": data or {}, "priority": priority},
            created_at=now,
        )
        await self._store.put(record)

        logger.info(
            "automation_scheduled",
            tracking_id=record.id,
            automation_type=automation_type,
            email=mask_email(customer.email),
            scheduled_at=record.scheduled_at.isoformat(),
            delay_hours=config.delay_hours,
        )

        if config.delay_hours == 0:
            outcome, error = await self._process(record.id, self._clock())
            if outcome == ProcessOutcome.FAILED:
                if isinstance(error, DeliveryError):
                    raise error
                raise DeliveryError(
                    f"{automation_type} send failed for tracking record {record.id}: {error}",
                    last_error=error,
                ) from error

        return ScheduleResult(success=True, tracking_id=record.id)

    async def cancel(self, tracking_id: str) -> bool:
        """Cancel a pending record. Returns False if it is not pending."""
        record = await self._store.claim(tracking_id)
        if record is None:
            return False
        record.status = TrackingStatus.CANCELLED
        await self._store.put(record)
        logger.info("automation_cancelled", tracking_id=tracking_id)
        return True

    # =========================================================================
    # Processing
    # =========================================================================

    async def process_scheduled_email(self, tracking_id: str) -> ProcessOutcome:
        """Process one record if it is pending and due. Never raises on delivery failure."""
        outcome, _ = await self._process(tracking_id, self._clock())
        return outcome

    async def _process(
        self, tracking_id: str, now: datetime
    ) -> tuple[ProcessOutcome, Exception | None]:
        record = await self._store.get(tracking_id)
        if record is None or record.status != TrackingStatus.PENDING:
            return ProcessOutcome.SKIPPED, None

        config = self._automations.get(record.automation_type)
        if config is None:
            logger.warning(
                "automation_type_unknown",
                tracking_id=tracking_id,
                automation_type=record.automation_type,
            )
            return ProcessOutcome.SKIPPED, None

        if record.scheduled_at > now:
            return ProcessOutcome.NOT_DUE, None

        claimed = await self._store.claim(tracking_id)
        if claimed is None:
            logger.info("automation_claim_lost", tracking_id=tracking_id)
            return ProcessOutcome.SKIPPED, None

        try:
            return await self._deliver(claimed, config, now)
        except Exception as e:
            await self._release_claim(claimed, e)
            raise

    async def _deliver(
        self, record: TrackingRecord, config: AutomationConfig, now: datetime
    ) -> tuple[ProcessOutcome, Exception | None]:
        """Quota check, render, dispatch and record the outcome of a claimed record."""
        tracking_id = record.id
        if not self._quota.try_consume(self._today(now)):
            record.status = TrackingStatus.PENDING
            record.scheduled_at = self.next_deferral_time(now)
            await self._store.put(record)
            logger.info(
                "automation_quota_deferred",
                tracking_id=tracking_id,
                scheduled_at=record.scheduled_at.isoformat(),
            )
            return ProcessOutcome.QUOTA_DEFERRED, None
        await self._persist_usage(now)

        try:
            rendered = await self._renderer.render(record.automation_type, record.metadata)
            result = await self._dispatcher.send(
                EmailPayload(
                    to=record.customer_email,
                    subject=rendered.subject,
                    html=rendered.html,
                    text=rendered.text,
                    category=f"automation-{record.automation_type.lower()}",
                    idempotency_key=record.id,
                )
            )
        except Exception as e:
            outcome = self._record_failure(record, config, e, now)
            await self._store.put(record)
            return outcome, e

        record.status = TrackingStatus.SENT
        record.sent_at = now
        record.attempts += 1
        record.provider = result.provider_id
        record.message_id = result.message_id
        await self._store.put(record)

        logger.info(
            "automation_email_sent",
            tracking_id=tracking_id,
            automation_type=record.automation_type,
            email=mask_email(record.customer_email),
            provider=result.provider_id,
            message_id=result.message_id,
            attempts=record.attempts,
        )

        await self._update_contact(record, config, now)
        return ProcessOutcome.SENT, None

    async def _release_claim(self, record: TrackingRecord, error: Exception) -> None:
        """Return a claimed record to pending after an unexpected error.

        Only a record still in_flight is touched; the next sweep picks it up again.
        """
        try:
            current = await self._store.get(record.id)
            if current is None or current.status != TrackingStatus.IN_FLIGHT:
                return
            current.status = TrackingStatus.PENDING
            current.last_error = str(error)
            await self._store.put(current)
        except Exception as e:
            logger.error(
                "automation_release_failed",
                tracking_id=record.id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        logger.warning(
            "automation_claim_released",
            tracking_id=record.id,
            error=str(error),
            error_type=type(error).__name__,
        )

    def _record_failure(
        self,
        record: TrackingRecord,
        config: AutomationConfig,
        error: Exception,
        now: datetime,
    ) -> ProcessOutcome:
        record.attempts += 1
        record.last_error = str(error)

        if record.attempts < config.max_attempts:
            record.status = TrackingStatus.PENDING
            record.scheduled_at = now + timedelta(hours=2 ** (record.attempts - 1))
            outcome = ProcessOutcome.RETRYING
        else:
            record.status = TrackingStatus.FAILED
            outcome = ProcessOutcome.FAILED

        logger.warning(
            "automation_email_failed",
            tracking_id=record.id,
            automation_type=record.automation_type,
            email=mask_email(record.customer_email),
            attempts=record.attempts,
            max_attempts=config.max_attempts,
            outcome=outcome.value,
            error=str(error),
            error_type=type(error).__name__,
        )
        return outcome

    async def _persist_usage(self, now: datetime) -> None:
        usage = self._quota.usage(self._today(now))
        await self._store.set_state(DAILY_USAGE_STATE_KEY, f"{usage.date}:{usage.count}")

    async def _update_contact(
        self, record: TrackingRecord, config: AutomationConfig, now: datetime
    ) -> None:
        customer = record.customer
        attributes = {
            "FIRSTNAME": customer.first_name,
            "LASTNAME": customer.last_name,
            "LAST_EMAIL_TYPE": record.automation_type,
            "LAST_EMAIL_DATE": now.isoformat(),
            "EMAIL_ENGAGEMENT_SCORE": customer.quality_score + 1,
        }
        try:
            await self._contacts.upsert_contact(
                record.customer_email, attributes, list(config.contact_list_ids) or None
            )
        except Exception as e:
            logger.warning(
                "contact_update_failed",
                tracking_id=record.id,
                email=mask_email(record.customer_email),
                error=str(e),
            )

    # =========================================================================
    # Sweep
    # =========================================================================

    async def tick(self, now: datetime) -> SweepResult:
        """Process every pending record due at ``now``.

        Per-record errors are logged and counted as skipped; the sweep itself
        never raises.
        """
        sweep_id = str(uuid.uuid4())
        set_correlation_id(sweep_id)
        result = SweepResult(sweep_id=sweep_id)
        start = time.monotonic()

        try:
            due = await self._store.scan_due(now)
        except Exception as e:
            logger.error("sweep_scan_failed", error=str(e), error_type=type(e).__name__)
            set_correlation_id(None)
            return result

        logger.info("sweep_started", due_count=len(due))

        for record in due:
            result.processed += 1
            try:
                outcome, _ = await self._process(record.id, now)
            except Exception as e:
                logger.error(
                    "sweep_record_failed",
                    tracking_id=record.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                result.skipped += 1
                continue

            if outcome == ProcessOutcome.SENT:
                result.sent += 1
            elif outcome == ProcessOutcome.FAILED:
                result.failed += 1
            else:
                result.skipped += 1

        result.duration_ms = int((time.monotonic() - start) * 1000)
        logger.info(
            "sweep_complete",
            processed=result.processed,
            sent=result.sent,
            failed=result.failed,
            skipped=result.skipped,
            duration_ms=result.duration_ms,
        )
        set_correlation_id(None)
        return result

    async def process_scheduled_emails(self) -> SweepResult:
        """Run one sweep at the clock's current time."""
        return await self.tick(self._clock())

    # =========================================================================
    # Stats & maintenance
    # =========================================================================

    async def get_automation_stats(self) -> AutomationStats:
        records = await self._store.scan()
        stats = AutomationStats(
            daily_usage=self._quota.usage(self._today(self._clock())),
            total_scheduled=len(records),
        )

        sent = 0
        settled = 0
        for record in records:
            breakdown = stats.per_type_breakdown.setdefault(record.automation_type, TypeBreakdown())
            breakdown.scheduled += 1
            if record.status in (TrackingStatus.PENDING, TrackingStatus.IN_FLIGHT):
                stats.pending_count += 1
                continue
            settled += 1
            if record.status == TrackingStatus.SENT:
                breakdown.sent += 1
                sent += 1
            elif record.status == TrackingStatus.FAILED:
                breakdown.failed += 1

        stats.success_rate = round(sent / settled * 100, 2) if settled else 0.0
        return stats

    async def cleanup_old_tracking_records(self, days_to_keep: int = 30) -> int:
        """Delete non-pending records scheduled more than ``days_to_keep`` days ago."""
        cutoff = self._clock() - timedelta(days=days_to_keep)
        removed = await self._store.delete_older_than(cutoff)
        logger.info("tracking_cleanup_complete", removed=removed, days_to_keep=days_to_keep)
        return removed

    # =========================================================================
    # Triggers
    # =========================================================================

    async def trigger_welcome_email(self, customer: CustomerSnapshot) -> ScheduleResult:
        return await self.schedule_automation_email(
            "WELCOME_SERIES", customer, {"trigger": "signup"}, priority="high"
        )

    async def trigger_abandoned_cart_email(
        self,
        customer: CustomerSnapshot,
        cart_items: list[dict[str, Any]],
        stage: int = 1,
    ) -> ScheduleResult:
        """Schedule the first or second abandoned-cart reminder."""
        automation_type = "ABANDONED_CART_2" if stage >= 2 else "ABANDONED_CART_1"
        return await self.schedule_automation_email(
            automation_type, customer, {"cart_items": cart_items, "stage": stage}, priority="medium"
        )

    async def trigger_order_confirmation_email(
        self, customer: CustomerSnapshot, order: dict[str, Any]
    ) -> ScheduleResult:
        return await self.schedule_automation_email(
            "ORDER_CONFIRMATION", customer, {"order": order}, priority="high"
        )

    async def trigger_care_guide_email(
        self, customer: CustomerSnapshot, order: dict[str, Any]
    ) -> ScheduleResult:
        return await self.schedule_automation_email(
            "CARE_GUIDE", customer, {"order": order}, priority="low"
        )

    async def trigger_review_request_email(
        self, customer: CustomerSnapshot, order: dict[str, Any]
    ) -> ScheduleResult:
        return await self.schedule_automation_email(
            "REVIEW_REQUEST", customer, {"order": order}, priority="medium"
        )

    async def trigger_reengagement_email(
        self, customer: CustomerSnapshot, days_since_last_purchase: int
    ) -> ScheduleResult:
        automation_type = (
            "REENGAGEMENT_90"
            if days_since_last_purchase >= REENGAGEMENT_LONG_DAYS
            else "REENGAGEMENT_30"
        )
        return await self.schedule_automation_email(
            automation_type,
            customer,
            {"days_since_last_purchase": days_since_last_purchase},
            priority="low",
        )
