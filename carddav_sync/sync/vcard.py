"""
vCard codec for CardDAV synchronization.

Converts between vCard text (3.0 and 4.0 as produced by common servers and
clients) and ContactRecord. Supports:
- Line unfolding/folding and text escaping
- Structured N and ADR values
- TYPE parameters in v3 (repeated, bare) and v4 (comma list, quoted) form
- Apple item groups (item1.TEL + item1.X-ABLabel) and the _$!<Label>!$_ wrapper
- Partial dates (--MMDD, year 1604, X-APPLE-OMIT-YEAR) and reminders
- Base64 photos, which are converted to data URIs
- Preservation of unmodeled properties as custom fields or in the notes

Only the fields ContactRecord models are supported. encode() is
deterministic and decode(encode(record)) == record.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date
from typing import Optional

from carddav_sync.sync.contact import (
    ContactRecord,
    CustomField,
    ImHandle,
    ImportantDate,
    PostalAddress,
    Reminder,
    TypedValue,
)
from carddav_sync.utils.normalization import KNOWN_TYPE_LABELS

logger = logging.getLogger(__name__)

CRLF = "\r\n"

# Maximum line length in octets before folding
FOLD_WIDTH = 75

UNKNOWN_PROPERTIES_HEADER = "--- Unknown vCard Properties ---"

APPLE_LABEL_RE = re.compile(r"^_\$!<(.+)>!\$_$")
CARD_START_RE = re.compile(r"^(?=BEGIN:VCARD[ \t]*\r?$)", re.IGNORECASE | re.MULTILINE)
PARTIAL_DATE_RE = re.compile(r"^--(\d{2})-?(\d{2})$")
FULL_DATE_RE = re.compile(r"^(\d{4})-?(\d{2})-?(\d{2})$")

# Server bookkeeping that must not influence the content hash
IGNORED_PROPERTIES = frozenset(
    {
        "VERSION",
        "PRODID",
        "REV",
        "CATEGORIES",
        "KIND",
        "SOURCE",
        "CLIENTPIDMAP",
        "LABEL",
        "X-ABLABEL",
    }
)

# Standard properties kept verbatim as custom fields
PRESERVED_PROPERTIES = frozenset(
    {"ROLE", "TZ", "LANG", "GENDER", "RELATED", "KEY", "GEO"}
)

# Legacy per-service IM properties and their protocols
IM_PROPERTIES = {
    "X-AIM": "aim",
    "X-JABBER": "xmpp",
    "X-ICQ": "icq",
    "X-MSN": "msn",
    "X-YAHOO": "ymsgr",
    "X-SKYPE": "skype",
    "X-SKYPE-USERNAME": "skype",
    "X-GOOGLE-TALK": "gtalk",
    "X-GADUGADU": "gadugadu",
    "X-QQ": "qq",
}

SECOND_FAMILY_NAME_PROPERTIES = frozenset(
    {"X-SECOND-LASTNAME", "X-NAMETAG-SECOND-LASTNAME"}
)

# TYPE values that carry no label information
GENERIC_TYPES = frozenset({"internet", "pref", "x400"})


class DecodeError(Exception):
    """Raised when a vCard lacks mandatory structure."""

    pass


@dataclass
class DecodeResult:
    """Outcome of decoding one card from a multi-card document."""

    text: str
    record: Optional[ContactRecord] = None
    error: Optional[DecodeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class _Property:
    name: str
    value: str
    params: dict[str, list[str]]
    group: Optional[str] = None

    def param(self, key: str) -> Optional[str]:
        values = self.params.get(key)
        return values[0] if values else None

    @property
    def types(self) -> list[str]:
        return self.params.get("TYPE", [])


# =============================================================================
# Escaping
# =============================================================================


def escape_text(text: str) -> str:
    """Escape backslashes, commas, semicolons and newlines."""
    return (
        text.replace("\\", "\\\\")
        .replace(",", "\\,")
        .replace(";", "\\;")
        .replace("\r\n", "\n")
        .replace("\n", "\\n")
    )


def unescape_text(text: str) -> str:
    """Reverse escape_text() in a single pass."""
    out: list[str] = []
    i = 0
    while i < len(text):
        char = text[i]
        if char == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt in "nN":
                out.append("\n")
            elif nxt in "\\,;:":
                out.append(nxt)
            else:
                out.append(char + nxt)
            i += 2
            continue
        out.append(char)
        i += 1
    return "".join(out)


def _unescape_uri(text: str) -> str:
    # URI values are written raw; only undo v3 clients escaping separators
    return re.sub(r"\\([,;:])", r"\1", text).strip()


def _split_scheme(value: str) -> tuple[Optional[str], str]:
    """Split ``scheme:rest`` on the first unescaped colon."""
    index = 0
    while index < len(value):
        char = value[index]
        if char == "\\":
            index += 2
            continue
        if char == ":":
            return value[:index] or None, value[index + 1 :]
        index += 1
    return None, value


def _split_structured(value: str) -> list[str]:
    """Split a structured value on unescaped semicolons and unescape parts."""
    parts: list[str] = []
    current: list[str] = []
    i = 0
    while i < len(value):
        char = value[i]
        if char == "\\" and i + 1 < len(value):
            current.append(value[i : i + 2])
            i += 2
            continue
        if char == ";":
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
        i += 1
    parts.append("".join(current))
    return [unescape_text(part) for part in parts]


def _split_outside_quotes(text: str, separator: str) -> list[str]:
    parts: list[str] = []
    current: list[str] = []
    in_quotes = False
    for char in text:
        if char == '"':
            in_quotes = not in_quotes
            current.append(char)
        elif char == separator and not in_quotes:
            parts.append("".join(current))
            current = []
        else:
            current.append(char)
    parts.append("".join(current))
    return parts


# =============================================================================
# Line handling
# =============================================================================


def _unfold(text: str) -> list[str]:
    lines: list[str] = []
    for raw in re.split(r"\r\n|\r|\n", text):
        if raw[:1] in (" ", "\t") and lines:
            lines[-1] += raw[1:]
        elif raw.strip():
            lines.append(raw)
    return lines


def _fold(line: str) -> str:
    if len(line.encode("utf-8")) <= FOLD_WIDTH:
        return line

    chunks: list[str] = []
    current: list[str] = []
    size = 0
    limit = FOLD_WIDTH
    for char in line:
        width = len(char.encode("utf-8"))
        if size + width > limit:
            chunks.append("".join(current))
            current = []
            size = 0
            # Continuation lines start with a space
            limit = FOLD_WIDTH - 1
        current.append(char)
        size += width
    chunks.append("".join(current))
    return (CRLF + " ").join(chunks)


def _parse_line(line: str) -> _Property:
    in_quotes = False
    colon = -1
    for index, char in enumerate(line):
        if char == '"':
            in_quotes = not in_quotes
        elif char == ":" and not in_quotes:
            colon = index
            break
    if colon == -1:
        raise DecodeError(f"Malformed property line (missing ':'): {line[:60]!r}")

    head, value = line[:colon], line[colon + 1 :]
    parts = _split_outside_quotes(head, ";")

    name = parts[0].strip()
    group: Optional[str] = None
    if "." in name:
        group, name = name.split(".", 1)
    if not name:
        raise DecodeError(f"Malformed property line (empty name): {line[:60]!r}")

    params: dict[str, list[str]] = {}
    for param in parts[1:]:
        if not param.strip():
            continue
        if "=" in param:
            key, raw_value = param.split("=", 1)
            key = key.strip().upper()
        else:
            # v2.1/v3 bare parameter: TEL;HOME;VOICE:...
            key, raw_value = "TYPE", param
        values = [v.strip().strip('"') for v in _split_outside_quotes(raw_value, ",")]
        if key == "TYPE":
            values = [t.strip() for v in values for t in v.split(",")]
        params.setdefault(key, []).extend(v for v in values if v)

    return _Property(name=name.upper(), value=value, params=params, group=group)


# =============================================================================
# Decoding
# =============================================================================


def _decode_apple_label(label: str) -> str:
    match = APPLE_LABEL_RE.match(label)
    return match.group(1) if match else label


def _pick_label(prop: _Property, group_label: Optional[str]) -> Optional[str]:
    if group_label:
        return group_label
    types = [t for t in prop.types if t.lower() not in GENERIC_TYPES]
    if len(types) > 1:
        types = [t for t in types if t.lower() != "voice"] or types
    return types[0] if types else None


def _parse_date(prop: _Property) -> Optional[tuple[date, bool]]:
    value = prop.value.strip().split("T", 1)[0]

    partial = PARTIAL_DATE_RE.match(value)
    full = FULL_DATE_RE.match(value)
    try:
        if partial:
            return date(1604, int(partial.group(1)), int(partial.group(2))), False
        if full:
            parsed = date(int(full.group(1)), int(full.group(2)), int(full.group(3)))
            omit_year = prop.param("X-APPLE-OMIT-YEAR")
            if omit_year and omit_year == str(parsed.year):
                return parsed, False
            return parsed, True
    except ValueError:
        pass
    logger.debug(f"Ignoring unparseable date {prop.name}:{prop.value}")
    return None


def _parse_reminder(prop: _Property) -> Optional[Reminder]:
    kind = prop.param("X-REMINDER")
    if not kind:
        return None
    interval = prop.param("X-REMINDER-INTERVAL")
    try:
        return Reminder(
            kind=kind,
            interval=int(interval) if interval else None,
            unit=prop.param("X-REMINDER-UNIT"),
        )
    except ValueError as e:
        logger.debug(f"Ignoring invalid reminder on {prop.name}: {e}")
        return None


class _CardDecoder:
    """Accumulates the properties of one card into a ContactRecord."""

    HANDLERS = {
        "BEGIN": "_nested",
        "END": "_nested",
        "UID": "_uid",
        "FN": "_formatted_name",
        "N": "_structured_name",
        "NICKNAME": "_nickname",
        "TEL": "_phone",
        "EMAIL": "_email",
        "ADR": "_address",
        "URL": "_url",
        "X-SOCIALPROFILE": "_url",
        "IMPP": "_impp",
        "ORG": "_organization",
        "TITLE": "_title",
        "NOTE": "_note",
        "PHOTO": "_photo",
        "BDAY": "_birthday",
        "ANNIVERSARY": "_anniversary",
        "X-ABDATE": "_labeled_date",
    }

    def __init__(self, properties: list[_Property]):
        self.properties = properties
        self.labels = {
            prop.group.lower(): _decode_apple_label(unescape_text(prop.value))
            for prop in properties
            if prop.group and prop.name == "X-ABLABEL"
        }
        self.record = ContactRecord()
        self.formatted_name: Optional[str] = None
        self.has_structured_name = False
        self.notes: list[str] = []
        self.unknown: list[str] = []

    def decode(self) -> ContactRecord:
        for prop in self.properties:
            label = self.labels.get(prop.group.lower()) if prop.group else None
            handler = self.HANDLERS.get(prop.name)
            if handler:
                getattr(self, handler)(prop, label)
            elif prop.name in IM_PROPERTIES:
                self.record.im_handles.append(
                    ImHandle(
                        handle=unescape_text(prop.value),
                        protocol=IM_PROPERTIES[prop.name],
                    )
                )
            elif prop.name in SECOND_FAMILY_NAME_PROPERTIES:
                self.record.second_family_name = unescape_text(prop.value).strip() or None
            elif prop.name in IGNORED_PROPERTIES:
                continue
            elif prop.name in PRESERVED_PROPERTIES or prop.name.startswith("X-"):
                self.record.custom_fields.append(
                    CustomField(key=prop.name, value=unescape_text(prop.value))
                )
            else:
                self.unknown.append(f"{prop.name}: {unescape_text(prop.value)}")

        if not self.has_structured_name and self.formatted_name is None:
            raise DecodeError("vCard has neither FN nor N")

        # Cards such as company entries carry an empty N; fall back to FN
        if self.formatted_name and self.formatted_name != self.record.display_name:
            if not any(
                (
                    self.record.prefix,
                    self.record.given_name,
                    self.record.middle_name,
                    self.record.family_name,
                    self.record.second_family_name,
                    self.record.suffix,
                )
            ):
                self.record.given_name = self.formatted_name

        self.record.notes = self._build_notes()
        return self.record

    def _build_notes(self) -> Optional[str]:
        notes = "\n".join(self.notes) if self.notes else None
        if not self.unknown:
            return notes
        block = UNKNOWN_PROPERTIES_HEADER + "\n" + "\n".join(self.unknown)
        return f"{notes}\n\n{block}" if notes else block

    def _nested(self, prop: _Property, label: Optional[str]) -> None:
        raise DecodeError(f"Unexpected {prop.name}:{prop.value} inside a vCard")

    def _uid(self, prop: _Property, label: Optional[str]) -> None:
        self.record.uid = _unescape_uri(prop.value) or None

    def _formatted_name(self, prop: _Property, label: Optional[str]) -> None:
        if self.formatted_name is None:
            self.formatted_name = unescape_text(prop.value).strip()

    def _structured_name(self, prop: _Property, label: Optional[str]) -> None:
        if self.has_structured_name:
            return
        self.has_structured_name = True
        parts = _split_structured(prop.value) + [""] * 5
        family, given, middle, prefix, suffix = parts[:5]
        self.record.family_name = family.strip() or None
        self.record.given_name = given.strip() or None
        self.record.middle_name = middle.strip() or None
        self.record.prefix = prefix.strip() or None
        self.record.suffix = suffix.strip() or None

    def _nickname(self, prop: _Property, label: Optional[str]) -> None:
        if self.record.nickname is None:
            self.record.nickname = unescape_text(prop.value).strip() or None

    def _phone(self, prop: _Property, label: Optional[str]) -> None:
        value = unescape_text(prop.value).strip()
        if value.lower().startswith("tel:"):
            value = value[4:]
        self.record.phones.append(TypedValue(value=value, label=_pick_label(prop, label)))

    def _email(self, prop: _Property, label: Optional[str]) -> None:
        value = unescape_text(prop.value).strip()
        if value.lower().startswith("mailto:"):
            value = value[7:]
        self.record.emails.append(TypedValue(value=value, label=_pick_label(prop, label)))

    def _address(self, prop: _Property, label: Optional[str]) -> None:
        # ADR = pobox;extended;street;locality;region;postal code;country
        parts = _split_structured(prop.value) + [""] * 7
        street_lines = parts[2].split("\n")
        self.record.addresses.append(
            PostalAddress(
                label=_pick_label(prop, label),
                street_line1=street_lines[0],
                street_line2="\n".join(street_lines[1:]) or None,
                locality=parts[3],
                region=parts[4],
                postal_code=parts[5],
                country=parts[6],
            )
        )

    def _url(self, prop: _Property, label: Optional[str]) -> None:
        self.record.urls.append(
            TypedValue(value=_unescape_uri(prop.value), label=_pick_label(prop, label))
        )

    def _impp(self, prop: _Property, label: Optional[str]) -> None:
        protocol, handle = _split_scheme(prop.value)
        service = prop.param("X-SERVICE-TYPE")
        if service:
            protocol = service
        self.record.im_handles.append(
            ImHandle(handle=_unescape_uri(handle), protocol=protocol)
        )

    def _organization(self, prop: _Property, label: Optional[str]) -> None:
        if self.record.organization is None:
            self.record.organization = _split_structured(prop.value)[0].strip() or None

    def _title(self, prop: _Property, label: Optional[str]) -> None:
        if self.record.title is None:
            self.record.title = unescape_text(prop.value).strip() or None

    def _note(self, prop: _Property, label: Optional[str]) -> None:
        note = unescape_text(prop.value)
        if note.strip():
            self.notes.append(note)

    def _photo(self, prop: _Property, label: Optional[str]) -> None:
        if self.record.photo is not None:
            return
        value = prop.value.strip()
        encoding = (prop.param("ENCODING") or "").lower()
        if encoding in ("b", "base64"):
            media = (prop.types[0] if prop.types else "jpeg").lower()
            if "/" not in media:
                media = f"image/{media}"
            payload = re.sub(r"\s+", "", value)
            self.record.photo = f"data:{media};base64,{payload}"
        else:
            self.record.photo = _unescape_uri(value) or None

    def _add_date(self, prop: _Property, title: str) -> None:
        parsed = _parse_date(prop)
        if parsed is None:
            return
        value, year_known = parsed
        self.record.important_dates.append(
            ImportantDate(
                title=title,
                date=value,
                year_known=year_known,
                reminder=_parse_reminder(prop),
            )
        )

    def _birthday(self, prop: _Property, label: Optional[str]) -> None:
        self._add_date(prop, "Birthday")

    def _anniversary(self, prop: _Property, label: Optional[str]) -> None:
        title = label or (prop.types[0] if prop.types else "Anniversary")
        self._add_date(prop, title)

    def _labeled_date(self, prop: _Property, label: Optional[str]) -> None:
        title = label or (prop.types[0] if prop.types else "Important Date")
        self._add_date(prop, title)


def split_cards(text: str) -> list[str]:
    """
    Split a document of concatenated vCards into individual card texts.

    Text before the first BEGIN:VCARD is returned as its own chunk so that
    decode() reports it as malformed instead of silently dropping it.
    """
    text = text.lstrip("\ufeff")
    return [chunk.strip() for chunk in CARD_START_RE.split(text) if chunk.strip()]


def decode(text: str) -> ContactRecord:
    """
    Decode one vCard.

    Args:
        text: A single BEGIN:VCARD ... END:VCARD block

    Returns:
        The decoded ContactRecord (uid may be None)

    Raises:
        DecodeError: If the BEGIN/END markers are missing, a property line is
            malformed, or the card has neither FN nor N
    """
    lines = _unfold(text.lstrip("\ufeff"))
    if not lines or lines[0].strip().upper() != "BEGIN:VCARD":
        raise DecodeError("Missing BEGIN:VCARD")
    if lines[-1].strip().upper() != "END:VCARD":
        raise DecodeError("Missing END:VCARD")

    properties = [_parse_line(line) for line in lines[1:-1]]
    return _CardDecoder(properties).decode()


def decode_all(text: str) -> list[DecodeResult]:
    """
    Decode every card in a multi-card document.

    A malformed card yields a result carrying its DecodeError; its siblings
    are still decoded.
    """
    results: list[DecodeResult] = []
    for chunk in split_cards(text):
        try:
            results.append(DecodeResult(text=chunk, record=decode(chunk)))
        except DecodeError as e:
            logger.debug(f"Failed to decode vCard: {e}")
            results.append(DecodeResult(text=chunk, error=e))
    return results


# =============================================================================
# Encoding
# =============================================================================


def _format_date(important_date: ImportantDate) -> str:
    value = important_date.date
    if not important_date.year_known:
        return f"--{value.month:02d}{value.day:02d}"
    return f"{value.year:04d}{value.month:02d}{value.day:02d}"


def _format_param(value: str) -> str:
    if any(char in value for char in ',;:"'):
        return '"' + value.replace('"', "'") + '"'
    return value


def _reminder_params(reminder: Optional[Reminder]) -> str:
    if reminder is None:
        return ""
    params = f";X-REMINDER={reminder.kind}"
    if reminder.interval is not None:
        params += f";X-REMINDER-INTERVAL={reminder.interval}"
    if reminder.unit is not None:
        params += f";X-REMINDER-UNIT={_format_param(reminder.unit)}"
    return params


class _CardWriter:
    def __init__(self) -> None:
        self.lines: list[str] = []
        self._groups = 0

    def add(self, line: str) -> None:
        self.lines.append(line)

    def add_labeled(self, name: str, params: str, value: str, label: Optional[str]) -> None:
        """Write a property with its label as TYPE or as an item group."""
        if label is None:
            self.add(f"{name}{params}:{value}")
        elif label in KNOWN_TYPE_LABELS and label not in GENERIC_TYPES:
            self.add(f"{name};TYPE={label}{params}:{value}")
        else:
            self.add_grouped(name, params, value, label)

    def add_grouped(self, name: str, params: str, value: str, label: str) -> None:
        """Write a property inside an item group carrying its X-ABLabel."""
        self._groups += 1
        group = f"item{self._groups}"
        self.add(f"{group}.{name}{params}:{value}")
        self.add(f"{group}.X-ABLabel:{escape_text(label)}")

    def render(self) -> str:
        return CRLF.join(_fold(line) for line in self.lines) + CRLF


def encode(record: ContactRecord) -> str:
    """
    Encode a ContactRecord as a vCard 4.0 document.

    Output is deterministic: the same record always yields the same text,
    with CRLF line endings and lines folded at 75 octets.

    Args:
        record: The record to encode

    Returns:
        vCard text
    """
    writer = _CardWriter()
    writer.add("BEGIN:VCARD")
    writer.add("VERSION:4.0")
    if record.uid:
        writer.add(f"UID:{record.uid}")

    writer.add(f"FN:{escape_text(record.display_name)}")
    name_parts = (
        record.family_name,
        record.given_name,
        record.middle_name,
        record.prefix,
        record.suffix,
    )
    writer.add("N:" + ";".join(escape_text(part or "") for part in name_parts))
    if record.nickname:
        writer.add(f"NICKNAME:{escape_text(record.nickname)}")
    if record.second_family_name:
        writer.add(f"X-SECOND-LASTNAME:{escape_text(record.second_family_name)}")

    for important_date in record.important_dates:
        value = _format_date(important_date)
        params = _reminder_params(important_date.reminder)
        if important_date.is_birthday:
            writer.add(f"BDAY{params}:{value}")
        elif important_date.is_anniversary:
            writer.add(f"ANNIVERSARY{params}:{value}")
        else:
            writer.add_grouped("X-ABDATE", params, value, important_date.title)

    for phone in record.phones:
        writer.add_labeled("TEL", "", escape_text(phone.value), phone.label)
    for email in record.emails:
        writer.add_labeled("EMAIL", "", escape_text(email.value), email.label)
    for address in record.addresses:
        street = "\n".join(
            line for line in (address.street_line1, address.street_line2) if line
        )
        components = (
            "",
            "",
            street,
            address.locality or "",
            address.region or "",
            address.postal_code or "",
            address.country or "",
        )
        value = ";".join(escape_text(component) for component in components)
        writer.add_labeled("ADR", "", value, address.label)
    for url in record.urls:
        writer.add_labeled("URL", "", url.value, url.label)
    for im in record.im_handles:
        if im.protocol:
            value = f"{im.protocol}:{im.handle}"
        else:
            # A bare handle must not read back as scheme:handle
            value = im.handle.replace(":", "\\:")
        writer.add(f"IMPP:{value}")

    if record.organization:
        writer.add(f"ORG:{escape_text(record.organization)}")
    if record.title:
        writer.add(f"TITLE:{escape_text(record.title)}")
    if record.notes:
        writer.add(f"NOTE:{escape_text(record.notes)}")
    if record.photo:
        writer.add(f"PHOTO:{record.photo}")
    for custom in record.custom_fields:
        writer.add(f"{custom.key}:{escape_text(custom.value)}")

    writer.add("END:VCARD")
    return writer.render()
