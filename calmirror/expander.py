from __future__ import annotations

import logging
from datetime import datetime, time, timedelta, timezone, tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.rrule import rruleset, rrulestr

from calmirror.errors import ConfigurationError, MalformedComponentError
from calmirror.handles import build_handle
from calmirror.models import (
    ExpansionResult,
    Occurrence,
    RawCalendarComponent,
    RejectedComponent,
    lookahead_window,
)


logger = logging.getLogger(__name__)

_DAY = timedelta(days=1)


def resolve_timezone(name: str) -> tzinfo:
    text = str(name or "").strip() or "UTC"
    if text.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(text)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ConfigurationError(f"Unknown time zone: {text}") from exc


def _stamp(value: datetime) -> int:
    return int(value.timestamp())


def is_all_day(start: datetime, end: datetime | None, tz: tzinfo) -> bool:
    if end is None or end <= start:
        return False
    local_start = start.astimezone(tz)
    local_end = end.astimezone(tz)
    if local_start.time() != time.min or local_end.time() != time.min:
        return False
    # Elapsed time, not wall-clock time: a day across a DST change is 23h or 25h.
    elapsed = end.astimezone(timezone.utc) - start.astimezone(timezone.utc)
    return elapsed % _DAY == timedelta(0)


def _occurrence(
    component: RawCalendarComponent,
    start: datetime,
    end: datetime | None,
    recurrence_instant: datetime | None,
    tz: tzinfo,
) -> Occurrence:
    return Occurrence(
        start=start,
        uid=component.uid,
        summary=component.summary,
        description=component.description,
        location=component.location,
        url=component.url,
        end=end,
        recurrence_instant=recurrence_instant,
        all_day=is_all_day(start, end, tz),
    )


def _validate(component: RawCalendarComponent) -> None:
    if component.start is None:
        raise MalformedComponentError("component has no DTSTART")
    span = component.span()
    if span is not None and span < timedelta(0):
        raise MalformedComponentError("component ends before it starts")


def _expand_single(
    component: RawCalendarComponent,
    window_start: datetime,
    window_end: datetime,
    tz: tzinfo,
) -> list[Occurrence]:
    start = component.start
    span = component.span()
    end = start + span if span is not None else None
    if start > window_end:
        return []
    # Events already in progress stay; purely past ones do not.
    if end is None and start < window_start:
        return []
    if end is not None and end < window_start:
        return []
    return [_occurrence(component, start, end, component.recurrence_id, tz)]


def _recurrence_set(component: RawCalendarComponent) -> rruleset:
    if component.rrule:
        rule_set = rrulestr(component.rrule, dtstart=component.start, forceset=True)
    else:
        rule_set = rruleset()
        rule_set.rdate(component.start)
    for rdate in component.rdates:
        rule_set.rdate(rdate)
    return rule_set


def _expand_recurring(
    component: RawCalendarComponent,
    window_start: datetime,
    window_end: datetime,
    tz: tzinfo,
    replaced: set[int],
) -> list[Occurrence]:
    excluded = {_stamp(value) for value in component.exdates} | replaced
    duration = component.span()
    occurrences: list[Occurrence] = []
    for instant in _recurrence_set(component).between(window_start, window_end, inc=True):
        if _stamp(instant) in excluded:
            continue
        end = instant + duration if duration is not None else None
        occurrences.append(_occurrence(component, instant, end, instant, tz))
    return occurrences


def _replaced_instances(components: list[RawCalendarComponent]) -> dict[str, set[int]]:
    replaced: dict[str, set[int]] = {}
    for component in components:
        if component.recurrence_id is not None and component.uid:
            replaced.setdefault(component.uid, set()).add(_stamp(component.recurrence_id))
    return replaced


def expand_components(
    components: list[RawCalendarComponent],
    *,
    now: datetime,
    lookahead_days: int,
    tz: tzinfo = timezone.utc,
) -> ExpansionResult:
    window_start, window_end = lookahead_window(now, lookahead_days)
    # Overrides (cancelled ones included) suppress the master's generated instance.
    replaced = _replaced_instances(components)
    result = ExpansionResult()

    for component in components:
        if component.is_cancelled:
            continue
        try:
            _validate(component)
            if component.is_recurring:
                produced = _expand_recurring(
                    component,
                    window_start,
                    window_end,
                    tz,
                    replaced.get(component.uid, set()),
                )
            else:
                produced = _expand_single(component, window_start, window_end, tz)
        except ValueError as exc:
            logger.warning("Rejected calendar component %s: %s", component.label, exc)
            result.rejected.append(RejectedComponent(label=component.label, reason=str(exc)))
            continue
        result.occurrences.extend(produced)

    result.occurrences.sort(key=lambda occurrence: (occurrence.start, build_handle(occurrence)))
    logger.info(
        "Expanded %d components into %d occurrences between %s and %s (%d rejected)",
        len(components),
        len(result.occurrences),
        window_start.isoformat(),
        window_end.isoformat(),
        len(result.rejected),
    )
    return result
