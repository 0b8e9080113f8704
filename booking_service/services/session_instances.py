# booking_service/services/session_instances.py
"""
Session instances: on-demand creation, schedule expansion and cancellation.

Recurring templates are expanded per weekday schedule inside their
recurrence window, using the template's own timezone for the local start
times. Instances are created insert-if-absent on (template, start_time), so
the generator job, a booking request and a payment webhook can all race for
the same slot safely.
"""
import calendar
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from booking_service import crud
from booking_service.core.config import settings
from booking_service.models.session_instance import SessionInstance
from booking_service.models.session_template import SessionTemplate
from booking_service.services.capacity import spots_remaining
from booking_service.services.booking_ledger import BookingLedger, booking_event_payload
from booking_service.services.payment.provider_interface import RefundReason
from booking_service.utils.time_utils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Occurrence:
    start_time: datetime
    end_time: datetime
    duration_minutes: int


@dataclass
class CancellationResult:
    session_instance_id: str
    cancelled_bookings: int = 0
    refunded_bookings: int = 0


def add_months(day: date, months: int) -> date:
    month_index = day.month - 1 + months
    year, month = day.year + month_index // 12, month_index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def _local_to_utc(day: date, local_time: time, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, local_time, tzinfo=tz).astimezone(timezone.utc)


def expand_template_occurrences(
    template: SessionTemplate,
    window_start: Optional[date] = None,
    window_end: Optional[date] = None,
) -> List[Occurrence]:
    """
    Occurrences of a template within [window_start, window_end] (inclusive
    local dates). The window defaults to today through the configured number
    of months ahead and is narrowed by the template's recurrence bounds.
    """
    tz = ZoneInfo(template.timezone or settings.DEFAULT_TIMEZONE)

    if not template.is_recurring:
        if template.one_off_date is None or template.one_off_start_time is None:
            return []
        start = _local_to_utc(template.one_off_date, template.one_off_start_time, tz)
        return [
            Occurrence(
                start, start + timedelta(minutes=template.duration_minutes), template.duration_minutes
            )
        ]

    today = datetime.now(tz).date()
    window_start = window_start or today
    window_end = window_end or add_months(today, settings.INSTANCE_GENERATION_MONTHS)

    first = max(window_start, template.recurrence_start_date or window_start)
    last = min(window_end, template.recurrence_end_date or window_end)

    schedules = [s for s in template.schedules if s.is_active]
    occurrences = []
    day = first
    while day <= last:
        for schedule in schedules:
            if schedule.day_of_week != day.weekday():
                continue
            start = _local_to_utc(day, schedule.time, tz)
            duration = schedule.duration_minutes or template.duration_minutes
            occurrences.append(Occurrence(start, start + timedelta(minutes=duration), duration))
        day += timedelta(days=1)

    return sorted(occurrences, key=lambda o: o.start_time)


def get_or_create_instance(
    db: Session, template: SessionTemplate, start_time: datetime
) -> SessionInstance:
    instance, created = crud.session_instance.get_or_create(
        db, template=template, start_time=start_time
    )
    if created:
        logger.info(f"Created instance {instance.id} of {template.id} at {instance.start_time}")
    return instance


def materialize_instances(
    db: Session,
    template: SessionTemplate,
    window_start: Optional[date] = None,
    window_end: Optional[date] = None,
) -> Tuple[int, int]:
    """Create the missing instances of a template. Returns (created, skipped)."""
    occurrences = expand_template_occurrences(template, window_start, window_end)
    if not occurrences:
        return 0, 0

    existing = crud.session_instance.get_start_times(
        db,
        template.id,
        occurrences[0].start_time,
        occurrences[-1].start_time + timedelta(seconds=1),
    )
    created = skipped = 0
    for occurrence in occurrences:
        if occurrence.start_time in existing:
            skipped += 1
            continue
        _, was_created = crud.session_instance.get_or_create(
            db,
            template=template,
            start_time=occurrence.start_time,
            duration_minutes=occurrence.duration_minutes,
        )
        if was_created:
            created += 1
        else:
            skipped += 1

    logger.info(f"Template {template.id}: {created} instance(s) created, {skipped} already present")
    return created, skipped


def get_availability(db: Session, instance_id: str) -> Optional[Tuple[SessionInstance, int]]:
    instance = crud.session_instance.get(db, instance_id)
    if instance is None:
        return None
    held = crud.booking.get_held_for_instance(db, instance_id)
    return instance, spots_remaining(instance.template.capacity, held)


def list_instances(
    db: Session,
    *,
    organization_id: str,
    start: datetime,
    end: datetime,
    include_hidden: bool = False,
) -> List[Tuple[SessionInstance, int]]:
    visibilities = ("open", "hidden") if include_hidden else ("open",)
    instances = crud.session_instance.get_in_range(
        db, organization_id=organization_id, start=start, end=end, visibilities=visibilities
    )
    return [(i, spots_remaining(i.template.capacity, i.bookings)) for i in instances]


def cancel_instance(
    db: Session,
    instance_id: str,
    reason: Optional[str] = None,
    *,
    publisher=None,
    refund_requester=None,
) -> CancellationResult:
    """
    Cancel an instance and every booking holding spots on it. Paid bookings
    get a refund request, queued after the commit. Calling it again on a
    cancelled instance returns zero counts.
    """
    result = CancellationResult(session_instance_id=instance_id)

    if not crud.session_instance.mark_cancelled(db, instance_id, reason):
        db.rollback()
        if crud.session_instance.get(db, instance_id) is None:
            raise ValueError(f"Session instance {instance_id} not found")
        logger.info(f"Instance {instance_id} already cancelled")
        return result

    now = utcnow()
    values = {
        "status": "cancelled",
        "cancelled_at": now,
        "cancellation_reason": reason or "session_cancelled",
    }
    to_refund = []
    cancelled_ids = []
    for booking in crud.booking.get_held_for_instance(db, instance_id):
        # Re-check payment inside the update so a payment confirmed after the
        # read above is still refunded.
        if crud.booking.transition(
            db,
            booking.id,
            from_statuses=("pending_payment", "confirmed", "completed"),
            from_payment_statuses=("completed",),
            values={**values, "refund_requested_at": now},
        ):
            to_refund.append(booking.id)
            cancelled_ids.append(booking.id)
        elif crud.booking.transition(
            db,
            booking.id,
            from_statuses=("pending_payment", "confirmed", "completed"),
            values=values,
        ):
            cancelled_ids.append(booking.id)
    db.commit()
    result.cancelled_bookings = len(cancelled_ids)

    ledger = BookingLedger(db, publisher=publisher, refund_requester=refund_requester)
    for booking_id in to_refund:
        booking = crud.booking.get(db, booking_id)
        if ledger.request_refund(booking, RefundReason.SESSION_CANCELLED):
            result.refunded_bookings += 1

    if publisher is not None:
        publisher.publish(
            "session_instance.cancelled",
            {
                "session_instance_id": instance_id,
                "reason": reason,
                "cancelled_bookings": result.cancelled_bookings,
                "refunded_bookings": result.refunded_bookings,
            },
            key=instance_id,
        )
        for booking_id in cancelled_ids:
            booking = crud.booking.get(db, booking_id)
            publisher.publish("booking.cancelled", booking_event_payload(booking), key=booking.id)

    logger.info(
        f"Instance {instance_id} cancelled: {result.cancelled_bookings} booking(s) cancelled, "
        f"{result.refunded_bookings} refund(s) requested"
    )
    return result
