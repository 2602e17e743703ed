"""Field mapping engine: canonical contact <-> provider record.

Defines:
- TRANSFORMS: named value transforms usable from a mapping entry
- DEFAULT_MAPPINGS: platform-default mapping set per provider
- resolve_mappings(): merge tenant overrides over the defaults
- validate_mappings(): reject ambiguous mapping sets at configuration time
- to_canonical() / to_remote(): per-field coercion in either direction,
  collecting per-field errors instead of failing the whole record

Field paths are dotted (``custom.industry``). Canonical snapshots handed to
the conflict resolver are flat dicts keyed by the local field path.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from src.crm_sync.errors import MappingConfigError
from src.crm_sync.schemas import (
    CONTACT_FIELDS,
    CUSTOM_FIELD_PREFIX,
    FieldMappingEntry,
    FieldType,
    MappingDirection,
    ProviderType,
    RemoteRecord,
)
from src.crm_sync.timestamps import parse_timestamp

MISSING: Any = object()


# ── Dotted paths ────────────────────────────────────────────────────────────


def get_path(data: dict[str, Any], path: str) -> Any:
    """Read a dotted path, returning MISSING when any segment is absent."""
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return MISSING
        current = current[part]
    return current


def set_path(data: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = data
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


# ── Transforms ──────────────────────────────────────────────────────────────


def _normalize_phone(value: str) -> str:
    value = value.strip()
    digits = re.sub(r"\D", "", value)
    return f"+{digits}" if value.startswith("+") else digits


def _normalize_email(value: str) -> str:
    value = value.strip().lower()
    if value and "@" not in value:
        raise ValueError(f"Invalid email address: {value!r}")
    return value


TRANSFORMS: dict[str, Callable[[str], str]] = {
    "lowercase": lambda v: v.lower(),
    "uppercase": lambda v: v.upper(),
    "strip": lambda v: v.strip(),
    "normalize_phone": _normalize_phone,
    "normalize_email": _normalize_email,
}


def normalize_natural_key(key: str, value: Any) -> str | None:
    """Normalize an email or phone value for natural-key matching."""
    if isinstance(value, list):
        value = value[0] if value else None
    if value is None or value == "":
        return None
    if key == "phone":
        return _normalize_phone(str(value)) or None
    return str(value).strip().lower() or None


# ── Platform defaults ───────────────────────────────────────────────────────


def _m(local: str, remote: str, **kwargs: Any) -> FieldMappingEntry:
    return FieldMappingEntry(local_field=local, remote_field=remote, **kwargs)


LIFECYCLE_STAGES = ["subscriber", "lead", "opportunity", "customer", "other"]

DEFAULT_MAPPINGS: dict[ProviderType, list[FieldMappingEntry]] = {
    ProviderType.HUBSPOT: [
        _m("first_name", "firstname"),
        _m("last_name", "lastname"),
        _m("email", "email", transform="normalize_email"),
        _m("phones", "phone", field_type=FieldType.ARRAY, transform="normalize_phone"),
        _m("company", "company"),
        _m("job_title", "jobtitle"),
        _m(
            "lifecycle_stage",
            "lifecyclestage",
            field_type=FieldType.ENUM,
            value_map={s: s for s in LIFECYCLE_STAGES},
        ),
        _m("birthdate", "date_of_birth", field_type=FieldType.DATE),
    ],
    ProviderType.SALESFORCE: [
        _m("first_name", "FirstName"),
        _m("last_name", "LastName"),
        _m("email", "Email", transform="normalize_email"),
        _m("phones", "Phone", field_type=FieldType.ARRAY, transform="normalize_phone"),
        _m("job_title", "Title"),
        _m("company", "Account.Name", direction=MappingDirection.PULL),
        _m("birthdate", "Birthdate", field_type=FieldType.DATE),
    ],
    ProviderType.PIPEDRIVE: [
        _m("first_name", "first_name"),
        _m("last_name", "last_name"),
        _m("email", "email", multi_value=True, transform="normalize_email"),
        _m(
            "phones",
            "phone",
            field_type=FieldType.ARRAY,
            multi_value=True,
            transform="normalize_phone",
        ),
        _m("company", "org_name", direction=MappingDirection.PULL),
    ],
}


# ── Resolution and validation ───────────────────────────────────────────────


def resolve_mappings(
    provider: ProviderType, overrides: Iterable[FieldMappingEntry] = ()
) -> list[FieldMappingEntry]:
    """Merge tenant overrides over the platform defaults.

    A tenant entry replaces the default entry with the same remote field,
    including replacing it with a disabled entry. Only enabled entries are
    returned, validated.
    """
    merged: dict[str, FieldMappingEntry] = {
        m.remote_field: m for m in DEFAULT_MAPPINGS.get(provider, [])
    }
    for entry in overrides:
        merged[entry.remote_field] = entry.model_copy(update={"is_custom": True})

    active = [m for m in merged.values() if m.enabled]
    validate_mappings(active)
    return active


def validate_mappings(mappings: Iterable[FieldMappingEntry]) -> None:
    """Reject mapping sets where a value could come from two sources.

    Raises:
        MappingConfigError: On an unknown transform, an enum without a value
            map, two pull mappings targeting the same local field, or two push
            mappings targeting the same remote field.
    """
    pull_targets: dict[str, str] = {}
    push_targets: dict[str, str] = {}
    for m in mappings:
        if not m.enabled:
            continue
        if m.local_field not in CONTACT_FIELDS and not (
            m.local_field.startswith(CUSTOM_FIELD_PREFIX) and len(m.local_field) > len(CUSTOM_FIELD_PREFIX)
        ):
            raise MappingConfigError(f"Unknown local field {m.local_field!r}")
        if m.transform is not None and m.transform not in TRANSFORMS:
            raise MappingConfigError(f"Unknown transform {m.transform!r} on {m.local_field}")
        if m.field_type == FieldType.ENUM and not m.value_map:
            raise MappingConfigError(f"Enum mapping {m.local_field} has no value map")

        if m.pulls:
            other = pull_targets.setdefault(m.local_field, m.remote_field)
            if other != m.remote_field:
                raise MappingConfigError(
                    f"Local field {m.local_field!r} is pulled from both "
                    f"{other!r} and {m.remote_field!r}"
                )
        if m.pushes:
            other = push_targets.setdefault(m.remote_field, m.local_field)
            if other != m.local_field:
                raise MappingConfigError(
                    f"Remote field {m.remote_field!r} is pushed from both "
                    f"{other!r} and {m.local_field!r}"
                )


def remote_fields(mappings: Iterable[FieldMappingEntry]) -> list[str]:
    """Top-level remote fields an adapter should request."""
    seen: dict[str, None] = {}
    for m in mappings:
        seen.setdefault(m.remote_field, None)
    return list(seen)


# ── Coercion ────────────────────────────────────────────────────────────────


@dataclass
class FieldError:
    local_field: str
    remote_field: str
    message: str


@dataclass
class MappingResult:
    values: dict[str, Any] = field(default_factory=dict)
    errors: list[FieldError] = field(default_factory=list)


def _coerce_text(value: Any) -> str:
    if isinstance(value, (dict, list)):
        raise ValueError(f"Expected a scalar, got {type(value).__name__}")
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _coerce_number(value: Any) -> int | float:
    if isinstance(value, bool):
        raise ValueError("Boolean is not a number")
    if isinstance(value, (int, float)):
        return value
    text = str(value).strip().replace(",", "")
    number = float(text)
    return int(number) if number.is_integer() and "." not in text else number


_TRUE = {"true", "1", "yes", "y", "on"}
_FALSE = {"false", "0", "no", "n", "off", ""}


def _coerce_boolean(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Cannot interpret {value!r} as boolean")


def _coerce_date(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if re.fullmatch(r"\d{4}-\d{2}-\d{2}", text):
        return date.fromisoformat(text).isoformat()
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"Cannot interpret {value!r} as date")
    return parsed.date().isoformat()


def _coerce_datetime(value: Any) -> str:
    parsed = parse_timestamp(value)
    if parsed is None:
        raise ValueError(f"Cannot interpret {value!r} as datetime")
    return parsed.isoformat()


_SCALAR_COERCERS: dict[FieldType, Callable[[Any], Any]] = {
    FieldType.TEXT: _coerce_text,
    FieldType.NUMBER: _coerce_number,
    FieldType.BOOLEAN: _coerce_boolean,
    FieldType.DATE: _coerce_date,
    FieldType.DATETIME: _coerce_datetime,
    FieldType.ARRAY: _coerce_text,
}


def _apply_transform(mapping: FieldMappingEntry, value: Any) -> Any:
    if mapping.transform is None or value is None:
        return value
    return TRANSFORMS[mapping.transform](_coerce_text(value))


def _pull_scalar(mapping: FieldMappingEntry, raw: Any) -> Any:
    if raw is None or raw == "":
        return None
    if mapping.field_type == FieldType.ENUM:
        reverse = {v: k for k, v in mapping.value_map.items()}
        key = _coerce_text(raw)
        if key not in reverse:
            raise ValueError(f"Value {raw!r} is not in the value map")
        return reverse[key]
    value = _SCALAR_COERCERS[mapping.field_type](raw)
    return _apply_transform(mapping, value)


def _push_scalar(mapping: FieldMappingEntry, value: Any) -> Any:
    if value is None:
        return None
    value = _apply_transform(mapping, value)
    if mapping.field_type == FieldType.ENUM:
        key = _coerce_text(value)
        if key not in mapping.value_map:
            raise ValueError(f"Value {value!r} is not in the value map")
        return mapping.value_map[key]
    return _SCALAR_COERCERS[mapping.field_type](value)


def pull_value(mapping: FieldMappingEntry, raw: Any) -> Any:
    """Convert one provider value to its canonical form."""
    if mapping.field_type == FieldType.ARRAY:
        items = raw if isinstance(raw, list) else ([] if raw in (None, "") else [raw])
        return [v for v in (_pull_scalar(mapping, item) for item in items) if v is not None]
    if isinstance(raw, list):
        raw = raw[0] if raw else None
    return _pull_scalar(mapping, raw)


def push_value(mapping: FieldMappingEntry, value: Any) -> Any:
    """Convert one canonical value to its provider form."""
    if mapping.field_type == FieldType.ARRAY:
        items = value if isinstance(value, list) else ([] if value is None else [value])
        converted = [_push_scalar(mapping, item) for item in items]
        if mapping.multi_value:
            return converted
        return converted[0] if converted else None
    if isinstance(value, list):
        raise ValueError(f"Expected a scalar for {mapping.local_field}, got a list")
    converted = _push_scalar(mapping, value)
    if mapping.multi_value:
        return [] if converted is None else [converted]
    return converted


def to_canonical(record: RemoteRecord, mappings: Iterable[FieldMappingEntry]) -> MappingResult:
    """Map a provider record to a flat canonical snapshot.

    Unmapped remote fields are ignored. Mapped fields absent from the record
    are left out of the snapshot (not cleared).
    """
    result = MappingResult()
    for m in mappings:
        if not m.pulls:
            continue
        raw = get_path(record.fields, m.remote_field)
        if raw is MISSING:
            continue
        try:
            result.values[m.local_field] = pull_value(m, raw)
        except (ValueError, TypeError) as exc:
            result.errors.append(FieldError(m.local_field, m.remote_field, str(exc)))
    return result


def to_remote(values: dict[str, Any], mappings: Iterable[FieldMappingEntry]) -> MappingResult:
    """Map a flat canonical snapshot to provider-keyed fields.

    Canonical fields without a push mapping are omitted. Result keys are
    remote field paths.
    """
    result = MappingResult()
    for m in mappings:
        if not m.pushes or m.local_field not in values:
            continue
        try:
            result.values[m.remote_field] = push_value(m, values[m.local_field])
        except (ValueError, TypeError) as exc:
            result.errors.append(FieldError(m.local_field, m.remote_field, str(exc)))
    return result


def canonical_snapshot(fields: dict[str, Any], mappings: Iterable[FieldMappingEntry]) -> dict[str, Any]:
    """Flatten a nested canonical contact to the mapped local field paths.

    Absent paths read as None, since the host contact has every column.
    Transforms are applied so local values compare equal to their pulled
    counterparts; values a transform rejects are kept as-is.
    """
    snapshot: dict[str, Any] = {}
    for m in mappings:
        value = get_path(fields, m.local_field)
        if value is MISSING:
            value = None
        try:
            if isinstance(value, list):
                value = [_apply_transform(m, item) for item in value]
            else:
                value = _apply_transform(m, value)
        except (ValueError, TypeError):
            pass
        snapshot[m.local_field] = value
    return snapshot
