"""Field Extraction Stage - Merge three extraction tiers into one record.

Tiers are evaluated in a fixed trust order:
1. DeterministicTier - typed fields of the prebuilt invoice model
2. TargetedLookupTier - query fields, requested in capped batches
3. InferenceFallbackTier - one oracle call for whatever is still missing

When no tier above the oracle yields line items, ChunkedItemsTier first
sends the layout tables to the oracle in row chunks so long item tables are
read in full.

For each canonical field the first non-empty value in that order wins and
the supplying tier is recorded. Values whose shape does not fit the field
are rejected before the merge.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

from pydantic import ValidationError

from docsplit.clients.layout import LayoutClient
from docsplit.clients.oracle import InferenceOracle
from docsplit.errors import ExternalServiceFailure, ParseFailure, SchemaViolation
from docsplit.models import (
    ExtractedField,
    ExtractionTier,
    LayoutResult,
    LayoutTable,
    LineItem,
    is_empty_value,
)

from .field_map import (
    FIELD_ALIASES,
    FIELD_SPECS,
    ITEM_FIELDS,
    ITEM_OBJECT,
    ITEM_PATHS,
    ITEMS_PATH,
    FieldSpec,
    fields_for_tier,
    by_priority,
    header_field_names,
    query_batches,
)
from .locale import parse_ambiguous_number

logger = logging.getLogger(__name__)

ITEMS_FIELD = "items"

NUMERIC_ITEM_ATTRS = frozenset(
    {"quantity", "unit_price", "total_amount", "net_weight", "gross_weight", "discount"}
)

# Item keys seen in oracle replies -> LineItem attribute
ITEM_KEY_ALIASES: dict[str, str] = {
    "item_code": "product_code",
    "reference": "product_code",
    "productcode": "product_code",
    "amount": "total_amount",
    "line_total": "total_amount",
    "total_price_ht": "total_amount",
    "total_price": "total_amount",
    "unitprice": "unit_price",
    "made_in": "origin_country",
    "country_of_origin": "origin_country",
    "unit_weight": "net_weight",
}

_PATH_SEGMENT_RE = re.compile(r"^(\w+)(?:\[(\d*)\])?$")
_ITEM_ANSWER_SPLIT_RE = re.compile(r"\s*(?:\n|;|,\s)\s*")
_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")
_JSON_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

WORD_CONTEXT_KEYWORDS = (
    "PO", "Order", "Commande", "Ref", "Client", "Made", "Origin", "Country",
    "Poids", "Weight", "Gram", "Invoice", "Facture", "Payment", "Due", "Net",
    "Total", "TVA", "VAT", "HT", "TTC",
)


@dataclass
class FieldAttempt:
    """One tier's answer for one field."""

    value: Any
    confidence: float = 0.0
    evidence: str = ""


class TierStrategy(Protocol):
    """Capability shared by all extraction tiers."""

    tier: ExtractionTier

    def attempt_field(self, name: str) -> Optional[FieldAttempt]: ...


@dataclass
class ExtractionOutcome:
    """Merged result of all tiers for one sub-document."""

    fields: dict[str, ExtractedField] = field(default_factory=dict)
    items: list[LineItem] = field(default_factory=list)
    item_tier: Optional[ExtractionTier] = None
    item_evidence: str = ""
    tier_breakdown: dict[str, int] = field(default_factory=dict)
    missing: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Layout payload helpers
# ---------------------------------------------------------------------------


def resolve_path(data: Any, path: str) -> Any:
    """Follow a dotted path into a layout field payload.

    Segments are keys, optionally indexed: `Items.valueArray[]` yields every
    element, `TaxDetails.valueArray[0]` the first. Missing keys give None.
    """
    current: list[Any] = [data]
    fan_out = False
    for segment in path.split("."):
        match = _PATH_SEGMENT_RE.match(segment)
        if not match:
            raise ValueError(f"Invalid path segment: {segment!r}")
        key, index = match.group(1), match.group(2)
        step: list[Any] = []
        for node in current:
            child = node.get(key) if isinstance(node, dict) else None
            if match.group(0).endswith("]"):
                if not isinstance(child, list):
                    continue
                if index == "":
                    step.extend(child)
                    fan_out = True
                elif int(index) < len(child):
                    step.append(child[int(index)])
            elif child is not None:
                step.append(child)
        current = step
    if fan_out:
        return current
    return current[0] if current else None


def field_value(node: Any) -> Any:
    """Plain value of a typed layout field; scalars pass through."""
    if not isinstance(node, dict):
        return node
    for key in (
        "valueString",
        "valueDate",
        "valueNumber",
        "valueInteger",
        "valuePhoneNumber",
        "valueCountryRegion",
        "valueTime",
    ):
        if node.get(key) is not None:
            return node[key]
    currency = node.get("valueCurrency")
    if isinstance(currency, dict) and currency.get("amount") is not None:
        return currency["amount"]
    if "content" in node:
        return node["content"]
    return node


def field_confidence(node: Any, default: float) -> float:
    if isinstance(node, dict) and isinstance(node.get("confidence"), (int, float)):
        return max(0.0, min(1.0, float(node["confidence"])))
    return default


def split_item_answer(value: Any) -> list[Any]:
    """Split a free-text answer listing one value per item."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [part for part in _ITEM_ANSWER_SPLIT_RE.split(value.strip()) if part]
    return [value]


# ---------------------------------------------------------------------------
# Shape checks
# ---------------------------------------------------------------------------


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


def coerce_item_value(attr: str, value: Any) -> Any:
    """Typed value for a LineItem attribute."""
    if is_empty_value(value):
        return None
    if attr in NUMERIC_ITEM_ATTRS:
        return parse_ambiguous_number(value)
    return str(value).strip()


def build_line_item(raw: dict[str, Any]) -> LineItem:
    """Validate an item dictionary from any tier into a LineItem.

    Raises:
        SchemaViolation: If the dictionary does not describe a line item
    """
    data: dict[str, Any] = {}
    for key, value in raw.items():
        attr = str(key).strip().lower().replace(" ", "_")
        attr = ITEM_KEY_ALIASES.get(attr, attr)
        if attr in data and data[attr] is not None:
            continue
        if attr in NUMERIC_ITEM_ATTRS:
            if not (value is None or _is_scalar(value)):
                raise SchemaViolation(f"items.{attr}", "expected a number")
            value = coerce_item_value(attr, value)
        data[attr] = value
    try:
        return LineItem.model_validate(data)
    except ValidationError as e:
        raise SchemaViolation(ITEMS_FIELD, str(e)) from e


def check_shape(name: str, value: Any) -> Any:
    """Return the value in the shape its field expects.

    Raises:
        SchemaViolation: If the value cannot fit the field
    """
    if FIELD_ALIASES.get(name, name) == ITEMS_FIELD:
        if not isinstance(value, list):
            raise SchemaViolation(name, "expected a list of line items")
        items = []
        for entry in value:
            if not isinstance(entry, dict):
                raise SchemaViolation(name, "line items must be objects")
            items.append(build_line_item(entry))
        return items

    spec = FIELD_SPECS.get(name)
    if spec is not None and spec.item_level:
        values = value if isinstance(value, list) else [value]
        if not all(v is None or _is_scalar(v) for v in values):
            raise SchemaViolation(name, "expected scalar values per item")
        return value

    if not _is_scalar(value):
        raise SchemaViolation(name, f"expected a scalar, got {type(value).__name__}")
    return value


# ---------------------------------------------------------------------------
# Tiers
# ---------------------------------------------------------------------------


class DeterministicTier:
    """Typed fields returned by the prebuilt invoice model."""

    tier = ExtractionTier.DETERMINISTIC

    def __init__(self, layout: LayoutResult, default_confidence: float = 0.9):
        self.layout = layout
        self.default_confidence = default_confidence
        self._specs = {s.name: s for s in fields_for_tier(self.tier)}

    def attempt_field(self, name: str) -> Optional[FieldAttempt]:
        if name == ITEMS_FIELD:
            return self._attempt_items()
        spec = self._specs.get(name)
        if spec is None:
            return None
        node = resolve_path(self.layout.fields, spec.path)
        if node is None:
            return None
        value = field_value(node)
        if is_empty_value(value):
            return None
        return FieldAttempt(
            value=value,
            confidence=field_confidence(node, self.default_confidence),
            evidence=f"{spec.path}",
        )

    def _attempt_items(self) -> Optional[FieldAttempt]:
        rows = resolve_path(self.layout.fields, ITEMS_PATH) or []
        items = []
        for row in rows:
            obj = row.get(ITEM_OBJECT) if isinstance(row, dict) else None
            if not isinstance(obj, dict):
                continue
            items.append(
                {attr: field_value(resolve_path(obj, path)) for attr, path in ITEM_PATHS.items()}
            )
        if not items:
            return None
        return FieldAttempt(
            value=items,
            confidence=field_confidence(self.layout.fields.get("Items"), self.default_confidence),
            evidence=f"{ITEMS_PATH} ({len(items)} rows)",
        )


class TargetedLookupTier:
    """Query fields answered by the layout service.

    Keys already answered by the base analysis are not requested again; the
    rest go out in batches of at most `batch_size` keys.
    """

    tier = ExtractionTier.TARGETED_LOOKUP

    def __init__(
        self,
        layout_client: LayoutClient,
        document: bytes,
        specs: Optional[Sequence[FieldSpec]] = None,
        batch_size: int = 20,
        default_confidence: float = 0.7,
    ):
        self.layout_client = layout_client
        self.document = document
        self.specs = list(specs) if specs is not None else fields_for_tier(self.tier)
        self.batch_size = batch_size
        self.default_confidence = default_confidence
        self._by_name = {s.name: s for s in self.specs}
        self._answers: dict[str, Any] = {}
        self.requests_made = 0

    async def prefetch(self, base_layout: Optional[LayoutResult] = None) -> None:
        """Fetch answers for every query key.

        Raises:
            ExternalServiceFailure: If a query request fails
        """
        known = base_layout.fields if base_layout else {}
        pending = []
        for spec in self.specs:
            if known.get(spec.query) is not None:
                self._answers[spec.query] = known[spec.query]
            else:
                pending.append(spec)

        for batch in query_batches(pending, self.batch_size):
            keys = [s.query for s in batch]
            logger.debug("Requesting %d query fields", len(keys))
            analysis = await self.layout_client.analyze(self.document, query_fields=keys)
            self.requests_made += 1
            if not analysis.success or analysis.layout is None:
                raise ExternalServiceFailure("layout", analysis.error or "query field request failed")
            for key in keys:
                node = analysis.layout.fields.get(key)
                if node is not None:
                    self._answers[key] = node

    def attempt_field(self, name: str) -> Optional[FieldAttempt]:
        spec = self._by_name.get(name)
        if spec is None:
            return None
        node = self._answers.get(spec.query)
        if node is None:
            return None
        value = field_value(node)
        if is_empty_value(value):
            return None
        if spec.item_level:
            value = split_item_answer(value)
        return FieldAttempt(
            value=value,
            confidence=field_confidence(node, self.default_confidence),
            evidence=f"query field {spec.query}",
        )


FIELD_EXTRACTION_SYSTEM_PROMPT = """You are an expert invoice data extraction assistant. You find invoice fields that automatic extraction missed by searching the layout analysis of one invoice: page text, tables, key-value pairs and word context.

SEARCH METHODOLOGY:
1. Start with high-confidence key-value pairs
2. Search tables for structured data (especially line items)
3. Analyze word context around key terms
4. Search field variations in French, English, German and Italian

EXTRACTION RULES:
- Return dates as YYYY-MM-DD
- Return numbers as strings with a dot decimal separator, without currency symbols or thousands separators ("2,378.02 CHF" -> "2378.02", "6 834,99 EUR" -> "6834.99")
- For item-level fields return a list with one value per line item, in table row order
- For "items" return a list of objects with description, product_code, quantity, unit_price, total_amount, net_weight, gross_weight, origin_country, po_number
- Country fields must be real countries, never table headers
- Only return a field when the evidence is clear

CONFIDENCE SCORING:
- 0.9-1.0: found in key-value pairs
- 0.8-0.9: found in a table with clear context
- 0.6-0.8: found in text via contextual clues
- 0.5-0.6: inferred from surrounding content

Return ONLY valid JSON:
{
  "fields": {"field_name": "value"},
  "confidence": {"field_name": 0.95},
  "evidence": {"field_name": "Found in key-value pairs: 'Invoice Number' -> '123456'"}
}"""


def build_layout_excerpt(layout: LayoutResult, max_bytes: int = 30000) -> str:
    """Condensed view of the layout for the oracle, capped at max_bytes."""
    parts: list[str] = []

    if layout.pages:
        parts.append("DOCUMENT TEXT CONTENT:\n")
        for page in layout.pages:
            text = page.text[:1500]
            marker = "\n[...truncated...]" if len(page.text) > 1500 else ""
            parts.append(f"--- Page {page.page_number} ---\n{text}{marker}\n\n")

    if layout.tables:
        parts.append("TABLE STRUCTURES AND CONTENT:\n")
        for i, table in enumerate(layout.tables):
            rows = table.rows()
            parts.append(
                f"--- Table {i + 1} ({table.row_count} rows x {table.column_count} cols) ---\n"
            )
            if table.headers:
                parts.append(f"Headers: {' | '.join(table.headers)}\n")
            for row_index, row in enumerate(rows[:10]):
                parts.append(f"Row {row_index}: {' | '.join(row)}\n")
            if len(rows) > 10:
                parts.append(f"... and {len(rows) - 10} more rows\n")
            parts.append("\n")

    if layout.key_value_pairs:
        parts.append("KEY-VALUE PAIRS DETECTED:\n")
        for kv in sorted(layout.key_value_pairs, key=lambda kv: kv.confidence, reverse=True):
            parts.append(f'"{kv.key}" -> "{kv.value}" (confidence: {kv.confidence})\n')

    contexts = word_contexts(layout)
    if contexts:
        parts.append("\nCONTEXTUAL WORD ANALYSIS:\n")
        for keyword, text in contexts:
            parts.append(f'Near "{keyword}": {text}\n')

    excerpt = "".join(parts)
    encoded = excerpt.encode("utf-8")
    if len(encoded) > max_bytes:
        excerpt = encoded[:max_bytes].decode("utf-8", errors="ignore") + "\n[...truncated...]"
    return excerpt


def word_contexts(layout: LayoutResult, window: int = 10) -> list[tuple[str, str]]:
    """Words surrounding each keyword occurrence, per page."""
    contexts = []
    for page in layout.pages:
        words = [w.content for w in page.words]
        for keyword in WORD_CONTEXT_KEYWORDS:
            needle = keyword.lower()
            for i, word in enumerate(words):
                if needle in word.lower():
                    start = max(0, i - window)
                    contexts.append((keyword, " ".join(words[start : i + window])))
    return contexts


def parse_field_response(response: str) -> dict[str, Any]:
    """Parse a `{fields, confidence, evidence}` reply.

    Raises:
        ParseFailure: If the reply is not a JSON object with a fields map
    """
    text = _CODE_FENCE_RE.sub("", (response or "").strip())
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        match = _JSON_OBJECT_RE.search(text)
        if not match:
            raise ParseFailure("No JSON object found in field response")
        try:
            payload = json.loads(match.group(0))
        except json.JSONDecodeError as e:
            raise ParseFailure(f"Field response is not valid JSON: {e}") from e

    if not isinstance(payload, dict) or not isinstance(payload.get("fields", {}), dict):
        raise ParseFailure("Field response has no fields object")
    confidence = payload.get("confidence")
    evidence = payload.get("evidence")
    return {
        "fields": payload.get("fields") or {},
        "confidence": confidence if isinstance(confidence, dict) else {},
        "evidence": evidence if isinstance(evidence, dict) else {},
    }


# Column kinds, later patterns win: numeric < currency < date < weight < quantity
COLUMN_PATTERNS: tuple[tuple[str, re.Pattern], ...] = (
    ("numeric", re.compile(r"^\d+[.,']?\d*$")),
    ("currency", re.compile(r"€|EUR|CHF|\$|USD|£|GBP")),
    ("date", re.compile(r"\d{2}[/.-]\d{2}[/.-]\d{2,4}")),
    ("weight", re.compile(r"\d\s*(?:kg|g|gr|lbs?|oz|tons?)\b", re.IGNORECASE)),
    ("quantity", re.compile(r"\b(?:pcs?|pce|units?|qty|pieces?)\b", re.IGNORECASE)),
)

HINT_SAMPLE_ROWS = 3


def column_kind(values: Sequence[str]) -> str:
    """Kind of a table column judged from a few of its values."""
    kind = "text"
    for name, pattern in COLUMN_PATTERNS:
        if any(pattern.search(v) for v in values if v):
            kind = name
    return kind


def derive_table_hints(tables: Sequence[LayoutTable]) -> str:
    """Glossary of table headers and typed columns for the oracle."""
    if not tables:
        return "No tables found in document."

    lines = [f"Document contains {len(tables)} table(s):", ""]
    for number, table in enumerate(tables, start=1):
        rows = table.rows()
        if not rows:
            continue
        headers = rows[0]
        samples = rows[1 : 1 + HINT_SAMPLE_ROWS]
        kinds = [
            (header or f"Column_{col}", column_kind([row[col] for row in samples if col < len(row)]))
            for col, header in enumerate(headers)
        ]
        found = {kind for _, kind in kinds}

        lines.append(f"Table {number} ({len(rows)} rows x {len(headers)} columns):")
        lines.append(f"- Headers: {', '.join(h for h in headers if h)}")
        if found & {"numeric", "currency"}:
            lines.append("- Contains numeric/currency data")
        if "weight" in found:
            lines.append("- Contains weight measurements")
        if "quantity" in found:
            lines.append("- Contains quantity information")
        typed = [f"{header}: {kind}" for header, kind in kinds if kind != "text"]
        if typed:
            lines.append(f"- Column types: {', '.join(typed)}")
        lines.append("")

    lines += [
        "Extraction guidelines:",
        "- Extract ALL table rows as items",
        "- Include products, fees, taxes, shipping and discounts, setting each item's type",
        "- Preserve original numeric values",
    ]
    return "\n".join(lines)


@dataclass
class TableChunk:
    """Consecutive data rows of one table, sent to the oracle together."""

    table_number: int
    headers: list[str]
    rows: list[list[str]]
    first_row: int

    def render(self) -> str:
        lines = [
            f"--- Table {self.table_number}, rows {self.first_row}-"
            f"{self.first_row + len(self.rows) - 1} ---",
            f"Headers: {' | '.join(self.headers)}",
        ]
        for offset, row in enumerate(self.rows):
            lines.append(f"Row {self.first_row + offset}: {' | '.join(row)}")
        return "\n".join(lines)


def table_chunks(tables: Sequence[LayoutTable], rows_per_chunk: int = 25) -> list[TableChunk]:
    """Split every table's data rows into chunks, in table then row order.

    Row numbers are 1-indexed data rows; the header row is repeated in each
    chunk of its table.
    """
    if rows_per_chunk < 1:
        raise ValueError(f"rows_per_chunk must be >= 1, got {rows_per_chunk}")
    chunks = []
    for number, table in enumerate(tables, start=1):
        rows = table.rows()
        headers, data = (rows[0], rows[1:]) if rows else ([], [])
        for start in range(0, len(data), rows_per_chunk):
            chunks.append(
                TableChunk(
                    table_number=number,
                    headers=headers,
                    rows=data[start : start + rows_per_chunk],
                    first_row=start + 1,
                )
            )
    return chunks


class InferenceFallbackTier:
    """Free-form inference over the layout for fields still missing."""

    tier = ExtractionTier.INFERENCE_FALLBACK

    def __init__(
        self,
        oracle: InferenceOracle,
        layout: LayoutResult,
        max_excerpt_bytes: int = 30000,
        max_tokens: int = 4000,
        default_confidence: float = 0.5,
    ):
        self.oracle = oracle
        self.layout = layout
        self.max_excerpt_bytes = max_excerpt_bytes
        self.max_tokens = max_tokens
        self.default_confidence = default_confidence
        self._fields: dict[str, Any] = {}
        self._confidence: dict[str, Any] = {}
        self._evidence: dict[str, Any] = {}

    def build_prompt(self, partial: dict[str, Any], missing: Sequence[str]) -> str:
        lines = [
            "TASK: Extract the following missing invoice fields from the layout analysis.",
            "",
            "MISSING FIELDS TO FIND:",
        ]
        for name in by_priority(missing):
            spec = FIELD_SPECS.get(name)
            marker = " (high priority)" if spec and spec.priority == "high" else ""
            hint = f": {spec.instruction}" if spec and spec.instruction else ""
            lines.append(f"- {name}{marker}{hint}")
        lines += [
            "",
            "CURRENT EXTRACTED DATA (for context):",
            json.dumps(partial, indent=2, ensure_ascii=False, default=str),
            "",
        ]
        if self.layout.tables:
            lines += ["TABLE HINTS:", derive_table_hints(self.layout.tables), ""]
        lines += [
            "LAYOUT ANALYSIS:",
            build_layout_excerpt(self.layout, self.max_excerpt_bytes),
        ]
        return "\n".join(lines)

    async def prefetch(self, partial: dict[str, Any], missing: Sequence[str]) -> None:
        """Ask the oracle once for all missing fields.

        An unparseable reply leaves the tier empty.

        Raises:
            ExternalServiceFailure: If the oracle call fails
        """
        if not missing:
            return
        logger.info("Inference fallback for %d missing fields", len(missing))
        response = await self.oracle.complete(
            FIELD_EXTRACTION_SYSTEM_PROMPT,
            self.build_prompt(partial, missing),
            json_object=True,
            max_tokens=self.max_tokens,
            temperature=0.1,
        )
        try:
            parsed = parse_field_response(response)
        except ParseFailure as e:
            logger.warning("Inference reply unusable (%s), no fields taken from it", e)
            return
        self._fields = parsed["fields"]
        self._confidence = parsed["confidence"]
        self._evidence = parsed["evidence"]

    def attempt_field(self, name: str) -> Optional[FieldAttempt]:
        value = self._fields.get(name)
        if is_empty_value(value):
            return None
        spec = FIELD_SPECS.get(name)
        if spec is not None and spec.item_level and isinstance(value, str):
            value = split_item_answer(value)
        try:
            confidence = float(self._confidence.get(name, self.default_confidence))
        except (TypeError, ValueError):
            confidence = self.default_confidence
        return FieldAttempt(
            value=value,
            confidence=max(0.0, min(1.0, confidence)),
            evidence=str(self._evidence.get(name) or "oracle inference"),
        )


class ChunkedItemsTier:
    """Line items read by the oracle one table chunk at a time.

    Every data row of every table reaches the oracle, however long the
    invoice. Items from all chunks are joined in table and row order.
    """

    tier = ExtractionTier.INFERENCE_FALLBACK

    def __init__(
        self,
        oracle: InferenceOracle,
        layout: LayoutResult,
        rows_per_chunk: int = 25,
        max_tokens: int = 4000,
        default_confidence: float = 0.5,
    ):
        self.oracle = oracle
        self.layout = layout
        self.rows_per_chunk = rows_per_chunk
        self.max_tokens = max_tokens
        self.default_confidence = default_confidence
        self.chunks = table_chunks(layout.tables, rows_per_chunk)
        self._items: list[dict[str, Any]] = []
        self._confidences: list[float] = []
        self.chunks_used = 0

    def build_prompt(self, chunk: TableChunk) -> str:
        table = self.layout.tables[chunk.table_number - 1]
        return "\n".join(
            [
                "TASK: Extract the line items listed in these table rows.",
                "Return them under \"items\", one object per row that describes an invoice line,",
                "in row order. Skip header, subtotal and blank rows.",
                "",
                "TABLE HINTS:",
                derive_table_hints([table]),
                "",
                "TABLE ROWS:",
                chunk.render(),
            ]
        )

    async def prefetch(self) -> None:
        """Ask the oracle for the items of each chunk in turn.

        A chunk whose reply is unusable contributes no items.

        Raises:
            ExternalServiceFailure: If an oracle call fails
        """
        for index, chunk in enumerate(self.chunks, start=1):
            logger.debug(
                "Items chunk %d/%d: table %d, %d rows",
                index,
                len(self.chunks),
                chunk.table_number,
                len(chunk.rows),
            )
            response = await self.oracle.complete(
                FIELD_EXTRACTION_SYSTEM_PROMPT,
                self.build_prompt(chunk),
                json_object=True,
                max_tokens=self.max_tokens,
                temperature=0.1,
            )
            try:
                parsed = parse_field_response(response)
            except ParseFailure as e:
                logger.warning("Items chunk %d unusable (%s), skipped", index, e)
                continue
            fields = parsed["fields"]
            items = fields.get(ITEMS_FIELD, fields.get("line_items"))
            if not isinstance(items, list):
                continue
            rows = [item for item in items if isinstance(item, dict)]
            if not rows:
                continue
            self._items.extend(rows)
            self.chunks_used += 1
            confidence = parsed["confidence"].get(ITEMS_FIELD, self.default_confidence)
            try:
                self._confidences.append(max(0.0, min(1.0, float(confidence))))
            except (TypeError, ValueError):
                self._confidences.append(self.default_confidence)
        if self.chunks:
            logger.info(
                "Read %d items from %d of %d table chunks",
                len(self._items),
                self.chunks_used,
                len(self.chunks),
            )

    def attempt_field(self, name: str) -> Optional[FieldAttempt]:
        if name != ITEMS_FIELD or not self._items:
            return None
        return FieldAttempt(
            value=list(self._items),
            confidence=sum(self._confidences) / len(self._confidences),
            evidence=f"oracle inference over {len(self.chunks)} table chunks",
        )


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def first_answer(
    name: str, tiers: Sequence[TierStrategy]
) -> Optional[tuple[ExtractionTier, FieldAttempt, Any]]:
    """First non-empty, well-shaped answer scanning tiers in order."""
    for strategy in tiers:
        attempt = strategy.attempt_field(name)
        if attempt is None or is_empty_value(attempt.value):
            continue
        try:
            value = check_shape(name, attempt.value)
        except SchemaViolation as e:
            logger.debug("Rejected %s from %s: %s", name, strategy.tier.value, e)
            continue
        if is_empty_value(value):
            continue
        return strategy.tier, attempt, value
    return None


def distribute_item_values(items: list[LineItem], attr: str, value: Any) -> int:
    """Fill an attribute across items from one answer.

    A list with one value per item fills item by item; a single value fills
    every item. Only empty attributes are written.

    Returns:
        Number of items updated
    """
    values = value if isinstance(value, list) else [value]
    if len(values) == len(items):
        per_item = values
    elif len(values) == 1:
        per_item = values * len(items)
    else:
        logger.debug("Not distributing %s: %d values for %d items", attr, len(values), len(items))
        return 0

    updated = 0
    for item, raw in zip(items, per_item):
        if getattr(item, attr) is not None:
            continue
        coerced = coerce_item_value(attr, raw)
        if coerced is None:
            continue
        setattr(item, attr, coerced)
        updated += 1
    return updated


class FieldExtractor:
    """Runs the three tiers for one sub-document and merges their answers."""

    def __init__(
        self,
        layout_client: LayoutClient,
        oracle: Optional[InferenceOracle] = None,
        query_batch_size: int = 20,
        max_excerpt_bytes: int = 30000,
        table_chunk_rows: int = 25,
    ):
        """Initialize extractor.

        Args:
            layout_client: Layout analysis service
            oracle: Inference oracle; without one the fallback tier is skipped
            query_batch_size: Max query keys per layout request
            max_excerpt_bytes: Cap on layout text sent to the oracle
            table_chunk_rows: Table rows per oracle call when reading items
        """
        self.layout_client = layout_client
        self.oracle = oracle
        self.query_batch_size = query_batch_size
        self.max_excerpt_bytes = max_excerpt_bytes
        self.table_chunk_rows = table_chunk_rows

    async def extract(
        self, document: bytes, layout: Optional[LayoutResult] = None
    ) -> ExtractionOutcome:
        """Extract canonical fields from one sub-document.

        Args:
            document: PDF bytes of the sub-document
            layout: Prior analysis of the document, analyzed here if None

        Returns:
            ExtractionOutcome with merged fields and line items

        Raises:
            ExternalServiceFailure: If the layout service or the oracle fails
        """
        if layout is None:
            analysis = await self.layout_client.analyze(document)
            if not analysis.success or analysis.layout is None:
                raise ExternalServiceFailure("layout", analysis.error or "analysis failed")
            layout = analysis.layout

        deterministic = DeterministicTier(layout)
        targeted = TargetedLookupTier(
            self.layout_client, document, batch_size=self.query_batch_size
        )
        await targeted.prefetch(layout)

        names = header_field_names()
        outcome = ExtractionOutcome()
        self._merge(outcome, names, [deterministic, targeted])

        tiers: list[TierStrategy] = [deterministic, targeted]
        if self.oracle is not None and not outcome.items and layout.tables:
            chunked = ChunkedItemsTier(self.oracle, layout, self.table_chunk_rows)
            await chunked.prefetch()
            tiers.append(chunked)
            self._merge(outcome, names, tiers)

        missing = self.inference_targets(outcome, names)
        if self.oracle is not None and missing:
            inference = InferenceFallbackTier(self.oracle, layout, self.max_excerpt_bytes)
            await inference.prefetch(self._partial_record(outcome), missing)
            tiers.append(inference)
            self._merge(outcome, names, tiers)

        self._apply_aliases(outcome, tiers)

        outcome.missing = [n for n in names if n not in outcome.fields]
        if not outcome.items:
            outcome.missing.append(ITEMS_FIELD)
        outcome.tier_breakdown = self._tier_breakdown(outcome)
        logger.info(
            "Extracted %d fields and %d items (%s)",
            len(outcome.fields),
            len(outcome.items),
            ", ".join(f"{k}={v}" for k, v in outcome.tier_breakdown.items()) or "none",
        )
        return outcome

    def inference_targets(self, outcome: ExtractionOutcome, names: Sequence[str]) -> list[str]:
        """Missing header fields and items, plus item references some item lacks."""
        missing = [n for n in names if n not in outcome.fields]
        if not outcome.items:
            missing.append(ITEMS_FIELD)
            return missing
        for spec in ITEM_FIELDS:
            if spec.tier != ExtractionTier.INFERENCE_FALLBACK:
                continue
            if any(getattr(item, spec.item_attr) is None for item in outcome.items):
                missing.append(spec.name)
        return missing

    def _merge(
        self, outcome: ExtractionOutcome, names: Sequence[str], tiers: Sequence[TierStrategy]
    ) -> None:
        for name in names:
            if name in outcome.fields:
                continue
            answer = first_answer(name, tiers)
            if answer is not None:
                tier, attempt, value = answer
                outcome.fields[name] = ExtractedField(
                    name=name,
                    value=value,
                    raw_value=attempt.value,
                    tier=tier,
                    confidence=attempt.confidence,
                    evidence=attempt.evidence,
                )

        if not outcome.items:
            self._merge_items(outcome, ITEMS_FIELD, tiers)
        if outcome.items:
            for spec in ITEM_FIELDS:
                answer = first_answer(spec.name, tiers)
                if answer is not None:
                    distribute_item_values(outcome.items, spec.item_attr, answer[2])

    def _merge_items(
        self, outcome: ExtractionOutcome, name: str, tiers: Sequence[TierStrategy]
    ) -> None:
        answer = first_answer(name, tiers)
        if answer is not None:
            tier, attempt, items = answer
            outcome.items = items
            outcome.item_tier = tier
            outcome.item_evidence = attempt.evidence

    def _apply_aliases(self, outcome: ExtractionOutcome, tiers: Sequence[TierStrategy]) -> None:
        """Write alternate keys onto canonical fields that are still empty."""
        for alias, canonical in FIELD_ALIASES.items():
            if canonical == ITEMS_FIELD:
                if not outcome.items:
                    self._merge_items(outcome, alias, tiers)
                continue
            if canonical in outcome.fields:
                continue
            answer = first_answer(alias, tiers)
            if answer is None:
                continue
            tier, attempt, value = answer
            outcome.fields[canonical] = ExtractedField(
                name=canonical,
                value=value,
                raw_value=attempt.value,
                tier=tier,
                confidence=attempt.confidence,
                evidence=f"{attempt.evidence} (as {alias})",
            )

    @staticmethod
    def _partial_record(outcome: ExtractionOutcome) -> dict[str, Any]:
        partial: dict[str, Any] = {name: f.value for name, f in outcome.fields.items()}
        if outcome.items:
            partial[ITEMS_FIELD] = [i.model_dump(mode="json", exclude_none=True) for i in outcome.items]
        return partial

    @staticmethod
    def _tier_breakdown(outcome: ExtractionOutcome) -> dict[str, int]:
        counts: dict[str, int] = {}
        for f in outcome.fields.values():
            if f.tier is not None:
                counts[f.tier.value] = counts.get(f.tier.value, 0) + 1
        if outcome.items and outcome.item_tier is not None:
            counts[outcome.item_tier.value] = counts.get(outcome.item_tier.value, 0) + 1
        return counts
