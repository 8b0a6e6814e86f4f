"""
Contact data model for CardDAV synchronization.

Provides the normalized ContactRecord produced by the vCard codec and
consumed by the reconciliation engine, with:
- Typed multi-value entries (phones, emails, addresses, links, IM handles)
- Important dates with optional reminder configuration
- Display name derivation with a fixed fallback chain
- Content hashing for change detection
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Optional

from carddav_sync.utils.normalization import build_display_name, normalize_label

# Year used for dates whose year is unknown (a leap year, so Feb 29 works)
UNKNOWN_YEAR = 1604

REMINDER_KINDS = ("once", "recurring")
REMINDER_UNITS = ("day", "week", "month", "year")


@dataclass(frozen=True)
class TypedValue:
    """A phone number, email address or web link with its type label."""

    value: str
    label: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", self.value.strip())
        object.__setattr__(self, "label", normalize_label(self.label))


@dataclass(frozen=True)
class PostalAddress:
    """A postal address; the vCard street component holds both street lines."""

    label: Optional[str] = None
    street_line1: Optional[str] = None
    street_line2: Optional[str] = None
    locality: Optional[str] = None
    region: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "label", normalize_label(self.label))
        for name in (
            "street_line1",
            "street_line2",
            "locality",
            "region",
            "postal_code",
            "country",
        ):
            value = getattr(self, name)
            if value is not None:
                value = value.strip() or None
            object.__setattr__(self, name, value)
        if self.street_line1 is None and self.street_line2 is not None:
            object.__setattr__(self, "street_line1", self.street_line2)
            object.__setattr__(self, "street_line2", None)

    def is_empty(self) -> bool:
        return not any(
            (
                self.street_line1,
                self.street_line2,
                self.locality,
                self.region,
                self.postal_code,
                self.country,
            )
        )


@dataclass(frozen=True)
class ImHandle:
    """An instant-messaging handle such as ``xmpp:alice@example.com``."""

    handle: str
    protocol: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "handle", self.handle.strip())
        protocol = self.protocol.strip().lower() if self.protocol else None
        object.__setattr__(self, "protocol", protocol or None)


@dataclass(frozen=True)
class Reminder:
    """
    Reminder configuration attached to an important date.

    Attributes:
        kind: "once" or "recurring"
        interval: Number of units between recurring reminders
        unit: One of day, week, month, year
    """

    kind: str = "recurring"
    interval: Optional[int] = None
    unit: Optional[str] = None

    def __post_init__(self) -> None:
        kind = self.kind.lower()
        if kind not in REMINDER_KINDS:
            raise ValueError(f"Unknown reminder kind: {self.kind}")
        object.__setattr__(self, "kind", kind)
        if self.unit is not None:
            unit = self.unit.lower()
            if unit not in REMINDER_UNITS:
                raise ValueError(f"Unknown reminder unit: {self.unit}")
            object.__setattr__(self, "unit", unit)
        if self.interval is not None and self.interval < 1:
            raise ValueError(f"Reminder interval must be >= 1, got {self.interval}")


@dataclass(frozen=True)
class ImportantDate:
    """
    A birthday, anniversary or other labeled date.

    When the year is unknown the date is stored in UNKNOWN_YEAR and
    year_known is False.
    """

    title: str
    date: date
    year_known: bool = True
    reminder: Optional[Reminder] = None

    def __post_init__(self) -> None:
        title = self.title.strip()
        if title.lower() in ("birthday", "anniversary"):
            title = title.capitalize()
        object.__setattr__(self, "title", title)
        if self.date.year == UNKNOWN_YEAR:
            object.__setattr__(self, "year_known", False)
        elif not self.year_known:
            object.__setattr__(self, "date", self.date.replace(year=UNKNOWN_YEAR))

    @property
    def is_birthday(self) -> bool:
        return self.title == "Birthday"

    @property
    def is_anniversary(self) -> bool:
        return self.title == "Anniversary"


@dataclass(frozen=True)
class CustomField:
    """A preserved extension property (``X-*``, ROLE, TZ, ...)."""

    key: str
    value: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "key", self.key.strip().upper())


@dataclass
class ContactRecord:
    """
    Normalized contact parsed from (or destined for) a vCard.

    Attributes:
        uid: External identifier; None only straight out of the codec
        prefix, given_name, middle_name, family_name, second_family_name,
        suffix, nickname: Name parts
        phones, emails, urls: Typed values in source order
        addresses: Postal addresses in source order
        im_handles: Instant-messaging handles in source order
        organization: Company name
        title: Job title
        notes: Free text, including preserved unknown properties
        photo: Photo URL or data URI
        important_dates: Birthdays, anniversaries and custom dates
        custom_fields: Extension properties kept verbatim

    Usage:
        record = decode(vcard_text)
        record.display_name   # "Dr. Alice Smith"
        record.content_hash() # stable across decode/encode cycles
    """

    uid: Optional[str] = None
    prefix: Optional[str] = None
    given_name: Optional[str] = None
    middle_name: Optional[str] = None
    family_name: Optional[str] = None
    second_family_name: Optional[str] = None
    suffix: Optional[str] = None
    nickname: Optional[str] = None

    phones: list[TypedValue] = field(default_factory=list)
    emails: list[TypedValue] = field(default_factory=list)
    addresses: list[PostalAddress] = field(default_factory=list)
    urls: list[TypedValue] = field(default_factory=list)
    im_handles: list[ImHandle] = field(default_factory=list)

    organization: Optional[str] = None
    title: Optional[str] = None
    notes: Optional[str] = None
    photo: Optional[str] = None
    important_dates: list[ImportantDate] = field(default_factory=list)
    custom_fields: list[CustomField] = field(default_factory=list)

    def __post_init__(self) -> None:
        for name in (
            "uid",
            "prefix",
            "given_name",
            "middle_name",
            "family_name",
            "second_family_name",
            "suffix",
            "nickname",
            "organization",
            "title",
            "photo",
        ):
            value = getattr(self, name)
            if value is not None:
                setattr(self, name, value.strip() or None)
        if self.notes is not None:
            notes = self.notes.replace("\r\n", "\n").replace("\r", "\n")
            self.notes = notes if notes.strip() else None

    @property
    def display_name(self) -> str:
        """Name parts joined in order, else the nickname, else a placeholder."""
        return build_display_name(
            self.prefix,
            self.given_name,
            self.middle_name,
            self.family_name,
            self.second_family_name,
            self.suffix,
            nickname=self.nickname,
        )

    @property
    def birthday(self) -> Optional[ImportantDate]:
        for important_date in self.important_dates:
            if important_date.is_birthday:
                return important_date
        return None

    def to_dict(self) -> dict[str, Any]:
        """Plain dictionary form with dates rendered as ISO strings."""
        data = asdict(self)
        for entry in data["important_dates"]:
            entry["date"] = entry["date"].isoformat()
        return data

    def content_hash(self) -> str:
        """
        Compute a hash of every modeled field for change detection.

        Returns:
            SHA-256 hex digest of the canonical JSON rendering
        """
        canonical = json.dumps(
            self.to_dict(), sort_keys=True, ensure_ascii=False, separators=(",", ":")
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def __repr__(self) -> str:
        return f"ContactRecord(uid={self.uid!r}, name={self.display_name!r})"
