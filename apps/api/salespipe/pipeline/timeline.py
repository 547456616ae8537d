from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from enum import StrEnum
from zoneinfo import ZoneInfo

from salespipe.pipeline.activity import Activity, ActivityType
from salespipe.pipeline.clock import as_aware, civil_date
from salespipe.pipeline.results import Err, GateError, GateErrorCode, Ok, Result

UPCOMING_LABEL = "Upcoming"
TODAY_LABEL = "Today"
YESTERDAY_LABEL = "Yesterday"

WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")
MONTH_NAMES = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


class CompletionState(StrEnum):
    PENDING = "PENDING"
    ACTIONABLE = "ACTIONABLE"
    LOCKED = "LOCKED"
    COMPLETED = "COMPLETED"


@dataclass(frozen=True)
class TimelineGroup:
    label: str
    day: date | None
    activities: list[Activity] = field(default_factory=list)

    @property
    def is_upcoming(self) -> bool:
        return self.day is None


def week_start(reference_date: date) -> date:
    """Sunday that opens the week containing ``reference_date``."""
    return reference_date - timedelta(days=(reference_date.weekday() + 1) % 7)


def day_label(day: date, reference_date: date) -> str:
    if day == reference_date:
        return TODAY_LABEL
    if day == reference_date - timedelta(days=1):
        return YESTERDAY_LABEL
    if week_start(reference_date) <= day < reference_date:
        return WEEKDAY_NAMES[day.weekday()]
    label = f"{WEEKDAY_NAMES[day.weekday()]}, {MONTH_NAMES[day.month - 1]} {day.day}"
    if day.year != reference_date.year:
        label = f"{label}, {day.year}"
    return label


def _is_future_relevant(activity: Activity, reference_date: date, zone: ZoneInfo) -> bool:
    moment = activity.schedule_at
    return moment is not None and civil_date(moment, zone) > reference_date


def group_timeline(activities: Iterable[Activity], reference_date: date, zone: ZoneInfo) -> list[TimelineGroup]:
    """Bucket ``activities`` into an "Upcoming" group followed by one group per day.

    Meetings starting and tasks falling due after ``reference_date`` go to
    "Upcoming", earliest first. Everything else is grouped by the civil date of
    ``created_at``, newest day first, keeping the input order inside each day.
    """
    upcoming: list[Activity] = []
    by_day: dict[date, list[Activity]] = {}
    for activity in activities:
        if _is_future_relevant(activity, reference_date, zone):
            upcoming.append(activity)
        else:
            by_day.setdefault(civil_date(activity.created_at, zone), []).append(activity)

    groups: list[TimelineGroup] = []
    if upcoming:
        upcoming.sort(key=lambda item: (as_aware(item.schedule_at), as_aware(item.created_at)))
        groups.append(TimelineGroup(label=UPCOMING_LABEL, day=None, activities=upcoming))
    for day in sorted(by_day, reverse=True):
        groups.append(TimelineGroup(label=day_label(day, reference_date), day=day, activities=by_day[day]))
    return groups


def filter_by_type(activities: Iterable[Activity], activity_type: ActivityType | None) -> list[Activity]:
    """Keep one activity type; stage changes always stay visible."""
    if activity_type is None:
        return list(activities)
    return [
        activity
        for activity in activities
        if activity.activity_type is activity_type or activity.activity_type is ActivityType.STAGE_CHANGE
    ]


def _gate_date(activity: Activity, zone: ZoneInfo) -> date | None:
    moment = activity.gate_at
    return civil_date(moment, zone) if moment is not None else None


def is_overdue(activity: Activity, reference_date: date, zone: ZoneInfo) -> bool:
    if not activity.is_gated or activity.completed:
        return False
    gate_date = _gate_date(activity, zone)
    return gate_date is not None and gate_date < reference_date


def can_toggle_completion(activity: Activity, reference_date: date, zone: ZoneInfo) -> bool:
    if not activity.is_gated:
        return False
    return _gate_date(activity, zone) == reference_date


def completion_state(activity: Activity, reference_date: date, zone: ZoneInfo) -> CompletionState | None:
    if not activity.is_gated:
        return None
    if activity.completed:
        return CompletionState.COMPLETED
    gate_date = _gate_date(activity, zone)
    if gate_date is None or gate_date < reference_date:
        return CompletionState.LOCKED
    if gate_date == reference_date:
        return CompletionState.ACTIONABLE
    return CompletionState.PENDING


def toggle_completion(
    activity: Activity,
    acting_user: str,
    reference_date: date,
    zone: ZoneInfo,
    *,
    now: datetime,
    desired: bool | None = None,
) -> Result[Activity, GateError]:
    if not activity.is_gated:
        return Err(
            GateError(
                code=GateErrorCode.NOT_COMPLETABLE,
                message=f"{activity.activity_type.value} activities do not carry a completion flag",
                details={"activity_type": activity.activity_type.value},
            )
        )
    if not can_toggle_completion(activity, reference_date, zone):
        gate_date = _gate_date(activity, zone)
        return Err(
            GateError(
                code=GateErrorCode.NOT_EDITABLE_TODAY,
                message="completion can only be changed on the activity date",
                details={
                    "activity_date": gate_date.isoformat() if gate_date else None,
                    "reference_date": reference_date.isoformat(),
                },
            )
        )

    target = (not activity.completed) if desired is None else desired
    if target == activity.completed:
        return Ok(activity)
    if target:
        return Ok(replace(activity, completed=True, completed_by=acting_user, completed_at=now))
    return Ok(replace(activity, completed=False, completed_by=None, completed_at=None))


def is_locked(activity: Activity, reference_date: date, zone: ZoneInfo) -> bool:
    """Overdue and still open. Edits, deletes and toggles are refused from here on."""
    return completion_state(activity, reference_date, zone) is CompletionState.LOCKED


def can_restore(activity: Activity, reference_date: date, zone: ZoneInfo) -> bool:
    """A soft-deleted activity comes back only while it is not overdue."""
    return activity.deleted_at is not None and not is_overdue(activity, reference_date, zone)


def pending_for_user(activities: Iterable[Activity], user_id: str) -> list[Activity]:
    """Open tasks and meetings assigned to (or created by) ``user_id``, earliest date first."""
    pending = [
        activity
        for activity in activities
        if activity.is_gated
        and not activity.completed
        and activity.deleted_at is None
        and activity.gate_at is not None
        and (activity.assigned_to or activity.created_by) == user_id
    ]
    pending.sort(key=lambda item: (as_aware(item.gate_at), as_aware(item.created_at)))
    return pending
