"""
Card Catalog Sync — Streaming CSV / JSON Parser

Two tolerant readers for catalog feed bodies:

- StreamingCSVParser: feed text chunks as they arrive, get complete rows back.
  A partial trailing line is carried over until the next chunk or finalize().
- JSON envelope normalizer: an ordered table of extractor strategies that pull
  the record array out of whichever envelope shape the endpoint returned.

Row normalizers map heterogeneous upstream column names onto the catalog
schema and return None for rows that must be dropped. Callers count drops.
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Callable, Iterable

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger(__name__)

# Body classifications for payloads that are not the JSON we asked for
HTML_BODY = "HTML_BODY"
EMPTY_BODY = "EMPTY_BODY"
CSV_BODY = "CSV_BODY"
UNKNOWN_NON_JSON = "UNKNOWN_NON_JSON"

_NON_KEY_CHARS = re.compile(r"[^a-z0-9]")
_WHITESPACE = re.compile(r"\s+")
_NON_SLUG_CHARS = re.compile(r"[^a-z0-9-]")


# ---------------------------------------------------------------------------
# Result model
# ---------------------------------------------------------------------------


class ParseResult(BaseModel):
    """Normalized records from one upstream body."""

    records: list[dict[str, Any]] = Field(default_factory=list)
    fetched: int = Field(default=0, description="Rows seen in the body")
    skipped: int = Field(default=0, description="Rows dropped by validation or filters")
    source: str | None = Field(default=None, description="'csv' or 'json'")
    envelope: str | None = Field(default=None, description="JSON extractor that matched")
    diagnostic: str | None = Field(default=None, description="Body classification on failure")
    url: str | None = None


# ---------------------------------------------------------------------------
# CSV tokenizer
# ---------------------------------------------------------------------------


def split_csv_line(line: str) -> list[str]:
    """
    Split one CSV line into trimmed values.

    Commas inside double quotes do not split; a doubled quote inside a quoted
    field is an escaped quote.
    """
    values: list[str] = []
    current: list[str] = []
    in_quotes = False
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                current.append('"')
                i += 1
            else:
                in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            values.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
        i += 1
    values.append("".join(current).strip())
    return values


class StreamingCSVParser:
    """
    Incremental CSV reader.

    Usage:
        parser = StreamingCSVParser()
        for chunk in chunks:
            rows.extend(parser.parse_chunk(chunk))
        rows.extend(parser.finalize())
    """

    def __init__(self) -> None:
        self._buffer = ""
        self.headers: list[str] = []
        self.row_count = 0

    def _parse_line(self, line: str) -> dict[str, Any] | None:
        line = line.rstrip("\r")
        if not line.strip():
            return None
        if not self.headers:
            self.headers = [h.strip().strip('"').lower() for h in split_csv_line(line)]
            logger.debug("csv_headers_parsed", headers=self.headers)
            return None
        cells = split_csv_line(line)
        row: dict[str, Any] = {}
        for index, header in enumerate(self.headers):
            value = cells[index] if index < len(cells) else None
            row[header] = value if value != "" else None
        self.row_count += 1
        return row

    def parse_chunk(self, text: str) -> list[dict[str, Any]]:
        """Consume `text` and return every row completed by it."""
        self._buffer += text
        *lines, self._buffer = self._buffer.split("\n")
        rows = []
        for line in lines:
            row = self._parse_line(line)
            if row is not None:
                rows.append(row)
        return rows

    def finalize(self) -> list[dict[str, Any]]:
        """Flush the carried-over partial line, if any."""
        remainder, self._buffer = self._buffer, ""
        row = self._parse_line(remainder)
        return [row] if row is not None else []


# ---------------------------------------------------------------------------
# Column identification
# ---------------------------------------------------------------------------

# (exact keys, substring keys), matched against normalized column names.
ColumnAliases = tuple[tuple[str, ...], tuple[str, ...]]

PRODUCT_ID: ColumnAliases = (("productid", "id"), ())
GROUP_ID: ColumnAliases = (("groupid", "id"), ())
CATEGORY_ID: ColumnAliases = (("categoryid", "id"), ("categoryid",))
PRODUCT_NAME: ColumnAliases = (("name", "cleanname", "productname"), ())
GROUP_NAME: ColumnAliases = (("name", "displayname"), ())
CATEGORY_NAME: ColumnAliases = (("name", "displayname", "seocategoryname"), ())
NUMBER: ColumnAliases = (("number", "extnumber"), ("number",))
RARITY: ColumnAliases = (("rarity", "extrarity"), ("rarity",))
PRODUCT_TYPE: ColumnAliases = (("producttype", "type", "extcardtype"), ("producttype", "cardtype"))
SLUG: ColumnAliases = (("urlslug", "slug"), ("slug",))
RELEASE_DATE: ColumnAliases = (("releasedate", "publishedon"), ("releasedate",))
ABBREVIATION: ColumnAliases = (("abbreviation", "abbr"), ("abbreviation",))
SUPPLEMENTAL: ColumnAliases = (("issupplemental", "supplemental"), ("supplemental",))
SEALED: ColumnAliases = (("sealedproduct", "sealed"), ("sealed",))
DISPLAY_NAME: ColumnAliases = (("displayname",), ("displayname",))
SEO_NAME: ColumnAliases = (("seocategoryname", "seoname"), ("seo",))


def normalize_key(key: str) -> str:
    return _NON_KEY_CHARS.sub("", str(key).lower())


def find_column(keys: Iterable[str], aliases: ColumnAliases) -> str | None:
    """Return the first normalized key matching `aliases` (exact, then substring)."""
    keys = list(keys)
    exact, contains = aliases
    for alias in exact:
        if alias in keys:
            return alias
    for key in keys:
        if any(fragment in key for fragment in contains):
            return key
    return None


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def kebab(value: Any) -> str:
    text = _WHITESPACE.sub("-", str(value or "").lower().strip())
    return _NON_SLUG_CHARS.sub("", text)


def to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "y"):
        return True
    if text in ("false", "0", "no", "n"):
        return False
    return None


def to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(str(value).strip())
    except ValueError:
        return None
    if number != number or number in (float("inf"), float("-inf")):
        return None
    if not number.is_integer():
        return None
    return int(number)


def to_datetime(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _index_row(row: dict[str, Any]) -> dict[str, tuple[str, Any]]:
    """normalized key -> (original key, value). First occurrence wins."""
    indexed: dict[str, tuple[str, Any]] = {}
    for key, value in row.items():
        indexed.setdefault(normalize_key(key), (key, value))
    return indexed


def _pick(indexed: dict[str, tuple[str, Any]], aliases: ColumnAliases) -> tuple[str | None, Any]:
    column = find_column(indexed.keys(), aliases)
    if column is None:
        return None, None
    return column, indexed[column][1]


# ---------------------------------------------------------------------------
# Row normalizers
# ---------------------------------------------------------------------------


def normalize_category_row(row: dict[str, Any]) -> dict[str, Any] | None:
    indexed = _index_row(row)
    category_id = to_int(_pick(indexed, CATEGORY_ID)[1])
    name = _text(_pick(indexed, CATEGORY_NAME)[1])
    if category_id is None or not name:
        return None
    return {
        "category_id": category_id,
        "name": name,
        "display_name": _text(_pick(indexed, DISPLAY_NAME)[1]),
        "seo_category_name": _text(_pick(indexed, SEO_NAME)[1]),
        "slug": kebab(name),
    }


def normalize_group_row(row: dict[str, Any], category_id: int) -> dict[str, Any] | None:
    indexed = _index_row(row)
    group_id = to_int(_pick(indexed, GROUP_ID)[1])
    name = _text(_pick(indexed, GROUP_NAME)[1])
    if group_id is None or not name:
        return None
    return {
        "group_id": group_id,
        "category_id": category_id,
        "name": name,
        "abbreviation": _text(_pick(indexed, ABBREVIATION)[1]),
        "release_date": to_datetime(_pick(indexed, RELEASE_DATE)[1]),
        "is_supplemental": to_bool(_pick(indexed, SUPPLEMENTAL)[1]),
        "sealed_product": to_bool(_pick(indexed, SEALED)[1]),
        "url_slug": _text(_pick(indexed, SLUG)[1]) or kebab(name),
    }


def normalize_product_row(
    row: dict[str, Any],
    group_id: int,
    category_id: int,
    include_sealed: bool = True,
    include_singles: bool = True,
) -> dict[str, Any] | None:
    """
    Map one product row onto the tcgcsv_products schema.

    Returns None when the row lacks a numeric product id or a name, or when
    its product type is excluded by the sealed/singles filters.
    """
    indexed = _index_row(row)
    id_col, raw_id = _pick(indexed, PRODUCT_ID)
    name_col, raw_name = _pick(indexed, PRODUCT_NAME)
    product_id = to_int(raw_id)
    name = _text(raw_name)
    if product_id is None or not name:
        return None

    number_col, number = _pick(indexed, NUMBER)
    rarity_col, rarity = _pick(indexed, RARITY)
    type_col, product_type = _pick(indexed, PRODUCT_TYPE)
    slug_col, slug = _pick(indexed, SLUG)
    product_type = _text(product_type)

    if product_type:
        lowered = product_type.lower()
        if not include_sealed and "sealed" in lowered:
            return None
        if not include_singles and ("card" in lowered or "single" in lowered):
            return None

    claimed = {id_col, name_col, number_col, rarity_col, type_col, slug_col}
    extended = {
        original: value
        for key, (original, value) in indexed.items()
        if key not in claimed and value not in (None, "", [], {})
    }

    return {
        "product_id": product_id,
        "group_id": group_id,
        "category_id": category_id,
        "name": name,
        "clean_name": name.lower().strip(),
        "number": _text(number),
        "rarity": _text(rarity),
        "product_type": product_type,
        "url_slug": _text(slug) or kebab(name),
        "extended_data": extended or None,
    }


def normalize_rows(
    rows: Iterable[dict[str, Any]],
    normalize: Callable[[dict[str, Any]], dict[str, Any] | None],
) -> tuple[list[dict[str, Any]], int]:
    """Apply `normalize` to each row; returns (records, dropped count)."""
    records = []
    skipped = 0
    for row in rows:
        record = normalize(row) if isinstance(row, dict) else None
        if record is None:
            skipped += 1
        else:
            records.append(record)
    return records, skipped


# ---------------------------------------------------------------------------
# JSON envelopes
# ---------------------------------------------------------------------------

Extractor = Callable[[Any, tuple[str, ...]], list[Any] | None]


def _field_list(payload: Any, field: str) -> list[Any] | None:
    if isinstance(payload, dict) and isinstance(payload.get(field), list):
        return payload[field]
    return None


def _named_fields(payload: Any, fields: tuple[str, ...]) -> list[Any] | None:
    for field in fields:
        found = _field_list(payload, field)
        if found:
            return found
    return None


ENVELOPE_EXTRACTORS: list[tuple[str, Extractor]] = [
    ("results", lambda payload, _: _field_list(payload, "results")),
    ("data", lambda payload, _: _field_list(payload, "data")),
    ("named", _named_fields),
    ("bare_array", lambda payload, _: payload if isinstance(payload, list) else None),
]


def extract_records(
    payload: Any,
    named_fields: tuple[str, ...] = (),
) -> tuple[list[Any], str | None]:
    """First extractor yielding a non-empty list wins; otherwise ([], None)."""
    for name, extractor in ENVELOPE_EXTRACTORS:
        records = extractor(payload, named_fields)
        if records:
            return records, name
    return [], None


def sniff_body(text: str) -> str:
    """Classify a body that did not yield JSON records."""
    stripped = (text or "").strip()
    if not stripped:
        return EMPTY_BODY
    if stripped.startswith("<"):
        return HTML_BODY
    if "," in stripped and "{" not in stripped and "[" not in stripped:
        return CSV_BODY
    return UNKNOWN_NON_JSON


def parse_json_body(
    text: str,
    named_fields: tuple[str, ...] = (),
) -> tuple[list[Any], str | None, str | None]:
    """
    Decode `text` and extract its record array.

    Returns (records, envelope, diagnostic). `diagnostic` is set whenever no
    records came out, from sniffing the raw text.
    """
    try:
        payload = json.loads(text)
    except (TypeError, ValueError):
        return [], None, sniff_body(text)

    records, envelope = extract_records(payload, named_fields)
    if not records:
        keys = sorted(payload.keys()) if isinstance(payload, dict) else []
        logger.info("json_envelope_empty", envelope_keys=keys)
        return [], None, sniff_body(text)
    return records, envelope, None
