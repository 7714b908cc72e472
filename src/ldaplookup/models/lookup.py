"""Models for directory lookups and their results."""

from __future__ import annotations

import traceback
from enum import Enum
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

__all__ = [
    "AttributeOption",
    "AttributeRecord",
    "AttributeType",
    "ConfigProblem",
    "DirectoryEntry",
    "ErrorDetail",
    "GroupMember",
    "GroupMembers",
    "Identity",
    "LookupResult",
    "UserAttributes",
]

DirectoryEntry = dict[str, str | list[str]]
"""A normalized directory entry.

Single-valued attributes hold a string and multi-valued attributes a list of
strings.
"""


class CamelCaseModel(BaseModel):
    """Base class for result models serialized with camel-case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AttributeType(str, Enum):
    """How a decoded attribute value should be rendered."""

    string = "string"
    date = "date"
    tag = "tag"
    array = "array"


class Identity(BaseModel):
    """A value to look up, plus caller metadata passed through unchanged."""

    model_config = ConfigDict(frozen=True)

    value: str = Field(
        ...,
        title="Lookup value",
        description="Value compared against the directory, usually an email",
        examples=["alice@example.com"],
    )

    metadata: dict[str, Any] = Field(
        default_factory=dict,
        title="Caller metadata",
        description="Opaque data returned unchanged with the result",
    )


class AttributeOption(BaseModel):
    """A configured directory attribute and its display label."""

    value: str = Field(
        ..., title="Attribute name", examples=["displayName"], min_length=1
    )

    display: str = Field(..., title="Display label", examples=["Display Name"])


class AttributeRecord(CamelCaseModel):
    """Decoded, display-ready form of one directory attribute."""

    name: str = Field(..., title="Attribute name", examples=["whenCreated"])

    display: str = Field(..., title="Display label", examples=["When Created"])

    value: Any = Field(
        ..., title="Decoded value", examples=["2023-06-15T12:00:00.000Z"]
    )

    original_value: Any = Field(
        ...,
        title="Raw value",
        description="Value exactly as returned by the directory",
        examples=["20230615120000.0Z"],
    )

    type: AttributeType = Field(..., title="Rendering type")


class UserAttributes(CamelCaseModel):
    """A set of decoded attributes in both list and mapping form."""

    attribute_list: list[AttributeRecord] = Field(
        default_factory=list, title="Attributes in display order"
    )

    attribute_by_name: dict[str, AttributeRecord] = Field(
        default_factory=dict, title="Attributes by attribute name"
    )


class ErrorDetail(CamelCaseModel):
    """Description of an error, suitable for returning to the caller."""

    name: str = Field(..., title="Error class", examples=["SearchError"])

    detail: str = Field(..., title="Error message")

    stack: str | None = Field(None, title="Formatted traceback")

    @classmethod
    def from_exception(cls, exc: BaseException) -> Self:
        """Build the error description from an exception.

        Parameters
        ----------
        exc
            Exception to describe.

        Returns
        -------
        ErrorDetail
            Corresponding error description.
        """
        stack = None
        if exc.__traceback__:
            stack = "".join(traceback.format_exception(exc))
        return cls(name=type(exc).__name__, detail=str(exc), stack=stack)


class LookupResult(CamelCaseModel):
    """Result of looking up one identity.

    Exactly one of three outcomes: found (``summary`` and ``details`` set),
    not found (``found`` false and no ``error``), or failed (``error``
    set).
    """

    identity: Identity = Field(..., title="Identity that was looked up")

    found: bool = Field(False, title="Whether a matching entry was found")

    summary: UserAttributes | None = Field(
        None, title="Attributes for the summary view"
    )

    details: UserAttributes | None = Field(
        None, title="Attributes for the detail view"
    )

    error: ErrorDetail | None = Field(None, title="Error for this identity")


class GroupMember(CamelCaseModel):
    """A user found when expanding a group."""

    name: str | None = Field(None, title="Name of the user")

    mail: str | None = Field(None, title="Email address of the user")


class GroupMembers(CamelCaseModel):
    """Users belonging to a group, truncated to the member limit."""

    users: list[GroupMember] = Field(default_factory=list, title="Members")


class ConfigProblem(CamelCaseModel):
    """A problem found while validating a lookup configuration."""

    field: str = Field(..., title="Configuration key", examples=["url"])

    message: str = Field(..., title="Description of the problem")
