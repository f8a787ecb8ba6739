from __future__ import annotations

from calmirror.models import Occurrence, format_timestamp


def _clean(value: str | None) -> str:
    return str(value or "").strip()


def project_fields(occurrence: Occurrence, all_day_field: str = "") -> list[tuple[str, str]]:
    fields: list[tuple[str, str]] = []
    uid = _clean(occurrence.uid)
    if uid:
        fields.append(("uid", uid))
    fields.append(("title", _clean(occurrence.summary)))
    for key in ("description", "location", "url"):
        value = _clean(getattr(occurrence, key))
        if value:
            fields.append((key, value))
    fields.append(("start_date", format_timestamp(occurrence.start)))
    if occurrence.end is not None:
        fields.append(("end_date", format_timestamp(occurrence.end)))
    if all_day_field:
        fields.append((all_day_field, "true" if occurrence.all_day else "false"))
    return fields


def to_field_inputs(fields: list[tuple[str, str]]) -> list[dict[str, str]]:
    return [{"key": key, "value": value} for key, value in fields]
