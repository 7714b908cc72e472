"""Decoding of raw directory attributes into display-ready values.

Everything here is a pure function of its inputs. Raw directory entries are
only read, never modified, and malformed values degrade to a placeholder or
a pass-through value rather than raising an exception.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import LookupConfig
from .constants import (
    ACCOUNT_CONTROL_FLAGS,
    FILETIME_EPOCH_OFFSET_MS,
    GENERALIZED_TIME_REGEX,
    INTEGER8_REGEX,
    UNPARSABLE_GROUP,
    UNUSED_FLAG,
)
from .models.lookup import (
    AttributeOption,
    AttributeRecord,
    AttributeType,
    DirectoryEntry,
    UserAttributes,
)

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)
_GENERALIZED_TIME = re.compile(GENERALIZED_TIME_REGEX)
_INTEGER8 = re.compile(INTEGER8_REGEX)

__all__ = [
    "DecodedValue",
    "account_control_flags",
    "decode_attribute",
    "format_timestamp",
    "merge_attributes",
    "order_details",
    "parse_display_names",
    "process_entry",
    "simple_group_name",
]


@dataclass(frozen=True, slots=True)
class DecodedValue:
    """A decoded attribute value along with the raw value it came from."""

    value: Any
    """Display-ready value."""

    original_value: Any
    """Raw value from the directory."""

    type: AttributeType
    """How the value should be rendered."""


def account_control_flags(value: int) -> list[int | str]:
    """Convert a ``userAccountControl`` value into flag names.

    Parameters
    ----------
    value
        Decimal value of the attribute. Treated as an unsigned 32-bit
        integer.

    Returns
    -------
    list of int or str
        The decimal value followed by the name of every set bit in ascending
        bit order. Bits with no assigned meaning are reported as ``NA``.
    """
    flags: list[int | str] = [value]
    bits = value & 0xFFFFFFFF
    position = 0
    while bits:
        if bits & 1:
            if position < len(ACCOUNT_CONTROL_FLAGS):
                flags.append(ACCOUNT_CONTROL_FLAGS[position])
            else:
                flags.append(UNUSED_FLAG)
        bits >>= 1
        position += 1
    return flags


def simple_group_name(group_dn: str) -> str:
    """Reduce a group DN to the value of its leaf RDN.

    Parameters
    ----------
    group_dn
        Fully qualified DN such as ``CN=Admins,CN=Users,DC=example,DC=com``.

    Returns
    -------
    str
        Leaf name (``Admins``), or a placeholder if the DN cannot be parsed.
    """
    first = group_dn.split(",")[0]
    if "=" not in first:
        return UNPARSABLE_GROUP
    return first.split("=", 1)[1]


def format_timestamp(timestamp: datetime) -> str:
    """Format a timestamp as ISO 8601 in UTC with millisecond precision."""
    timestamp = timestamp.astimezone(UTC)
    return timestamp.strftime("%Y-%m-%dT%H:%M:%S.") + (
        f"{timestamp.microsecond // 1000:03d}Z"
    )


def _parse_generalized_time(value: str) -> str | None:
    try:
        parsed = datetime.strptime(value, "%Y%m%d%H%M%S.0Z")
    except ValueError:
        return None
    return format_timestamp(parsed.replace(tzinfo=UTC))


def _parse_integer8(value: str) -> str | None:
    milliseconds = int(value) / 1e4 - FILETIME_EPOCH_OFFSET_MS
    try:
        return format_timestamp(_EPOCH + timedelta(milliseconds=milliseconds))
    except OverflowError:
        return None


def decode_attribute(
    name: str, raw: str | list[str], config: LookupConfig
) -> DecodedValue:
    """Decode one raw attribute value.

    The rules are applied in order and the first that matches wins: account
    control flags, simplified group names, generalized time, Integer8
    timestamps, multi-valued pass-through, and finally string pass-through.
    Group names are only simplified for multi-valued membership attributes,
    so a single membership is passed through as a string.

    Parameters
    ----------
    name
        Name of the attribute.
    raw
        Raw value, a string for single-valued attributes or a list of strings
        for multi-valued attributes.
    config
        Lookup configuration, which determines the special attributes and
        whether group names are simplified.

    Returns
    -------
    DecodedValue
        Decoded value, its type, and the untouched raw value.
    """
    if name == config.user_account_control_attribute and isinstance(raw, str):
        try:
            flags = account_control_flags(int(raw.strip(), 10))
        except ValueError:
            pass
        else:
            return DecodedValue(flags, raw, AttributeType.tag)

    simplify = config.simplify_group_names
    is_groups = name == config.group_membership_attribute
    if is_groups and simplify and isinstance(raw, list):
        simple = [simple_group_name(g) for g in raw]
        return DecodedValue(simple, raw, AttributeType.array)

    if isinstance(raw, str):
        if _GENERALIZED_TIME.match(raw):
            timestamp = _parse_generalized_time(raw)
            if timestamp:
                return DecodedValue(timestamp, raw, AttributeType.date)
        elif _INTEGER8.match(raw):
            timestamp = _parse_integer8(raw)
            if timestamp:
                return DecodedValue(timestamp, raw, AttributeType.date)
        return DecodedValue(raw, raw, AttributeType.string)

    return DecodedValue(raw, raw, AttributeType.array)


def parse_display_names(mapping: str) -> dict[str, str]:
    """Parse the display name mapping option.

    Parameters
    ----------
    mapping
        Comma-separated ``attribute:Display Name`` pairs. Whitespace around
        names is ignored, as are entries without a colon or attribute name.

    Returns
    -------
    dict of str
        Mapping from attribute name to display label.
    """
    result = {}
    for entry in mapping.split(","):
        attribute, sep, display = entry.partition(":")
        attribute = attribute.strip()
        display = display.strip()
        if sep and attribute and display:
            result[attribute] = display
    return result


def merge_attributes(
    attributes: Iterable[AttributeOption],
    custom: str,
    display_names: Mapping[str, str],
) -> list[AttributeOption]:
    """Build the effective list of attributes to display.

    Parameters
    ----------
    attributes
        Attributes selected in the configuration.
    custom
        Comma-separated list of additional attribute names. Each is trimmed
        and empty entries are dropped. Custom attributes are labeled with
        their own name.
    display_names
        Display label overrides, which apply to both kinds of attributes.

    Returns
    -------
    list of AttributeOption
        Configured attributes followed by the custom attributes.
    """
    merged = list(attributes)
    for name in custom.split(","):
        name = name.strip()
        if name:
            merged.append(AttributeOption(value=name, display=name))
    return [
        AttributeOption(
            value=a.value, display=display_names.get(a.value, a.display)
        )
        for a in merged
    ]


def order_details(
    records: list[AttributeRecord], config: LookupConfig
) -> list[AttributeRecord]:
    """Move the specially rendered attributes to the end of a detail list.

    Account control flags come next to last and group memberships last,
    regardless of where they were configured.
    """
    special = [
        config.user_account_control_attribute,
        config.group_membership_attribute,
    ]
    ordered = [r for r in records if r.name not in special]
    for name in special:
        ordered.extend(r for r in records if r.name == name)
    return ordered


def process_entry(
    entry: DirectoryEntry,
    attributes: Iterable[AttributeOption],
    config: LookupConfig,
    *,
    detail: bool = False,
) -> UserAttributes:
    """Decode the selected attributes of a directory entry.

    Parameters
    ----------
    entry
        Normalized directory entry. Not modified.
    attributes
        Attributes to decode, in display order. Attributes missing from the
        entry are skipped.
    config
        Lookup configuration.
    detail
        Whether this is the detail view, in which case the specially rendered
        attributes are moved to the end.

    Returns
    -------
    UserAttributes
        Decoded attributes as both a list and a mapping.
    """
    records = []
    for attribute in attributes:
        raw = entry.get(attribute.value)
        if raw is None or raw == "" or raw == []:
            continue
        decoded = decode_attribute(attribute.value, raw, config)
        record = AttributeRecord(
            name=attribute.value,
            display=attribute.display,
            value=decoded.value,
            original_value=decoded.original_value,
            type=decoded.type,
        )
        records.append(record)
    if detail:
        records = order_details(records, config)
    return UserAttributes(
        attribute_list=records,
        attribute_by_name={r.name: r for r in records},
    )
