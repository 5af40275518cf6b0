"""
Core matching engine for OE part lookup.

Matching Approach:
    - The reference workbook is scanned for a header row (first 20 rows) and
      every logical column is resolved by substring match against a synonym
      table, so column order and title rows never matter
    - Multi-value OEM cells are split on a broad delimiter set and every token
      is normalized (alphanumerics only, uppercased) into the reference index
    - Each query OE is normalized and looked up in the index; misses fall back
      to a grounded AI search (see ai_search.py)

Token Rules:
    - Tokens of normalized length <= 2 are noise (unit suffixes, stray letters)
      and never enter the index
    - When two reference rows share a token the later row wins; the collision
      is logged at DEBUG level only

Result Sources:
    - local:  copied verbatim from the reference record
    - ai:     product / vehicle / cross-reference OE from the AI search
    - failed: AI search failed after retries; failure markers are written
    - invalid: normalized query shorter than 3 chars; no lookup, no AI call
"""

import asyncio
import io
import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import openpyxl
import pandas as pd
from openpyxl.cell.rich_text import CellRichText, TextBlock

from ai_search import AIPartInfo, fetch_part_info

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
NOT_FOUND = -1
HEADER_SCAN_ROWS = 20        # Header row must sit within the first 20 rows
MIN_TOKEN_LENGTH = 3         # Normalized tokens shorter than this are discarded
AI_CALL_DELAY = 0.5          # Seconds to wait before every AI fallback call

# Delimiters between OE numbers inside one cell (ASCII + full-width CJK)
DELIMITER_CHARS = r"\s,;:/|，；、"
DELIMITER_PATTERN = re.compile(f"[{DELIMITER_CHARS}]+")
SEGMENT_PATTERN = re.compile(f"([{DELIMITER_CHARS}]+)")

SOURCE_LOCAL = "local"
SOURCE_AI = "ai"
SOURCE_FAILED = "failed"
SOURCE_INVALID = "invalid"

PICTURE_MATCHED = "匹配成功"
PICTURE_MISSING = "无图片"
AI_FAILED_MARKER = "检索失败"
UNAVAILABLE_MARKER = "-"
INVALID_MARKER = "无效编号"

# Column role detection keywords, checked as upper-cased substrings of the header
COLUMN_SYNONYMS: Dict[str, List[str]] = {
    'oem': ['OEM', 'OE', '原厂编号', '零件号'],
    'xx_code': ['XX CODE', 'XX编码'],
    'application': ['Application', '适用车型', '车型'],
    'year': ['Year', '年份'],
    'drive': ['Drive', '驱动'],
    'price': ['广州', 'Price', '价格'],
    'product_name': ['Product', '名称', '产品名'],
}

# Query list identifier column
QUERY_SYNONYMS = ['OE', 'OEM', '查询', '输入']

ProgressCallback = Callable[[str], None]
AISearch = Callable[[str, Optional[ProgressCallback]], Awaitable[AIPartInfo]]


class ReferenceFormatError(ValueError):
    """The reference workbook has no usable OEM column."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImageAttachment:
    data: bytes
    extension: str


@dataclass(frozen=True)
class ReferenceRecord:
    xx_code: str
    application: str
    year: str
    oem: str
    drive: str
    product_name: str
    price: Any = None
    image: Optional[ImageAttachment] = None


ReferenceIndex = Dict[str, ReferenceRecord]


@dataclass
class ResultRow:
    input_oe: str
    xx_code: Optional[str] = None
    application: Optional[str] = None
    year: Optional[str] = None
    oem: Optional[str] = None
    drive: Optional[str] = None
    picture: Optional[str] = None
    image: Optional[ImageAttachment] = None
    price: Any = None
    product_name: Optional[str] = None
    vehicle_model: Optional[str] = None
    general_oe: Optional[str] = None
    source: str = SOURCE_LOCAL


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

def cell_text(value: Any) -> str:
    """
    Best textual representation of a cell value.

    Handles the shapes a cell can come back as:
        - None / NaN            → ""
        - rich text             → concatenated text runs
        - computed-result wrapper (has .result) → the evaluated result
        - object with .text     → that text
        - integral float        → "12345" rather than "12345.0"
        - anything else         → str(value)
    """
    if value is None:
        return ""
    if isinstance(value, CellRichText):
        return "".join(part.text if isinstance(part, TextBlock) else str(part) for part in value)
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if value.is_integer():
            return str(int(value))
        return str(value)
    if isinstance(value, str):
        return value
    if hasattr(value, 'result'):
        return cell_text(value.result)
    if hasattr(value, 'text'):
        return cell_text(value.text)
    return str(value)


def normalize(value: Any) -> str:
    """Canonical comparison key: alphanumerics only, uppercased ("12345-ab" → "12345AB")."""
    return re.sub(r'[^A-Za-z0-9]', '', cell_text(value)).upper()


def split_tokens(text: str) -> List[str]:
    """Split a multi-value OEM cell into its raw tokens (delimiters dropped)."""
    return [t for t in DELIMITER_PATTERN.split(text) if t]


def split_segments(text: str) -> List[Tuple[str, bool]]:
    """
    Split text into alternating (segment, is_delimiter) pairs.

    Delimiter runs are kept verbatim so that joining the segments gives back
    the original text exactly.
    """
    segments = []
    for part in SEGMENT_PATTERN.split(text):
        if not part:
            continue
        segments.append((part, DELIMITER_PATTERN.fullmatch(part) is not None))
    return segments


# ---------------------------------------------------------------------------
# Header / column resolution
# ---------------------------------------------------------------------------

def find_col_index(headers, possible_names: List[str]) -> int:
    """Return the first column whose header contains any candidate name, else NOT_FOUND."""
    if headers is None:
        return NOT_FOUND
    candidates = [name.upper() for name in possible_names]
    for i, header in enumerate(headers):
        h = cell_text(header).strip().upper()
        if not h:
            continue
        if any(name in h for name in candidates):
            return i
    return NOT_FOUND


def resolve_columns(headers) -> Dict[str, int]:
    """Resolve every logical column from one header row (NOT_FOUND where absent)."""
    return {role: find_col_index(headers, names) for role, names in COLUMN_SYNONYMS.items()}


def detect_reference_columns(rows) -> Tuple[int, Dict[str, int]]:
    """
    Locate the header row among the first HEADER_SCAN_ROWS rows.

    Args:
        rows: iterable of row value sequences, starting at sheet row 1

    Returns:
        (header_row_number, column_map) where header_row_number is 1-based and
        column_map maps each logical column to a 0-based index or NOT_FOUND.

    Raises:
        ReferenceFormatError: no row in the scan window has an OEM column.
    """
    for row_number, values in enumerate(rows, start=1):
        if row_number > HEADER_SCAN_ROWS:
            break
        if find_col_index(values, COLUMN_SYNONYMS['oem']) != NOT_FOUND:
            return row_number, resolve_columns(values)
    raise ReferenceFormatError(
        f"No OEM column found in the first {HEADER_SCAN_ROWS} rows of the reference workbook "
        f"(expected a header containing one of: {', '.join(COLUMN_SYNONYMS['oem'])})."
    )


# ---------------------------------------------------------------------------
# Reference index
# ---------------------------------------------------------------------------

def _field(values, idx: int) -> str:
    if idx == NOT_FOUND or idx >= len(values):
        return ""
    return cell_text(values[idx])


def _raw_field(values, idx: int) -> Any:
    if idx == NOT_FOUND or idx >= len(values):
        return None
    value = values[idx]
    if isinstance(value, CellRichText):
        return cell_text(value)
    if value == "":
        return None
    return value


def extract_row_images(worksheet) -> Dict[int, ImageAttachment]:
    """
    Collect embedded images keyed by the 1-based sheet row of their top-left anchor.

    Images without a cell anchor, or whose bytes cannot be read, are skipped.
    """
    images = {}
    for idx, image in enumerate(getattr(worksheet, '_images', [])):
        anchor_from = getattr(image.anchor, '_from', None)
        if anchor_from is None:
            continue
        try:
            data = image._data()
        except Exception as e:
            logger.warning(f"Skipping unreadable image {idx} in sheet {worksheet.title}: {e}")
            continue
        if not data:
            continue
        extension = (getattr(image, 'format', None) or 'png').lower()
        images[anchor_from.row + 1] = ImageAttachment(data=data, extension=extension)
    return images


def build_reference_index(
    rows,
    header_row: int,
    columns: Dict[str, int],
    images: Optional[Dict[int, ImageAttachment]] = None,
) -> ReferenceIndex:
    """
    Build the lookup: normalized OE token → ReferenceRecord.

    Args:
        rows: all row value sequences of the sheet, starting at sheet row 1
        header_row: 1-based header row (data starts on the next row)
        columns: logical column → 0-based index, from detect_reference_columns()
        images: 1-based row number → attachment, from extract_row_images()

    One record is shared by every qualifying token of its OEM cell.
    """
    images = images or {}
    oem_col = columns['oem']
    index: ReferenceIndex = {}

    for row_number, values in enumerate(rows, start=1):
        if row_number <= header_row or values is None:
            continue
        oem_raw = _field(values, oem_col)
        if not oem_raw.strip():
            continue

        record = ReferenceRecord(
            xx_code=_field(values, columns.get('xx_code', NOT_FOUND)),
            application=_field(values, columns.get('application', NOT_FOUND)),
            year=_field(values, columns.get('year', NOT_FOUND)),
            oem=oem_raw,
            drive=_field(values, columns.get('drive', NOT_FOUND)),
            product_name=_field(values, columns.get('product_name', NOT_FOUND)),
            price=_raw_field(values, columns.get('price', NOT_FOUND)),
            image=images.get(row_number),
        )

        for token in split_tokens(oem_raw):
            key = normalize(token)
            if len(key) < MIN_TOKEN_LENGTH:
                continue
            if key in index and index[key] is not record:
                logger.debug(f"OE token {key} on row {row_number} overrides an earlier reference row")
            index[key] = record

    return index


def load_reference_index(file) -> ReferenceIndex:
    """Load the first worksheet of a reference workbook and index it."""
    if isinstance(file, (bytes, bytearray)):
        file = io.BytesIO(file)
    workbook = openpyxl.load_workbook(file, data_only=True, rich_text=True)
    worksheet = workbook.worksheets[0]

    rows = [tuple(r) for r in worksheet.iter_rows(values_only=True)]
    header_row, columns = detect_reference_columns(rows)
    missing = [role for role, idx in columns.items() if idx == NOT_FOUND]
    if missing:
        logger.info(f"Reference columns not found (left empty): {', '.join(missing)}")

    images = extract_row_images(worksheet)
    index = build_reference_index(rows, header_row, columns, images)
    logger.info(
        f"Reference index built: {len(index):,} OE tokens from sheet '{worksheet.title}' "
        f"(header row {header_row}, {len(images)} images)"
    )
    return index


# ---------------------------------------------------------------------------
# Query list
# ---------------------------------------------------------------------------

def read_query_rows(file) -> List[List[Any]]:
    """Read the first sheet of the query file (Excel or CSV) as raw rows."""
    if isinstance(file, (bytes, bytearray)):
        file = io.BytesIO(file)
    # Uploaded files carry .name; paths are their own name
    file_name = getattr(file, 'name', None) or (str(file) if isinstance(file, (str, os.PathLike)) else '')
    if str(file_name).lower().endswith('.csv'):
        df = pd.read_csv(file, header=None, dtype=str, keep_default_na=False)
    else:
        df = pd.read_excel(file, sheet_name=0, header=None, dtype=object)
    df = df.astype(object).where(pd.notna(df), None)
    return df.values.tolist()


def parse_query_list(rows: List[List[Any]]) -> List[str]:
    """
    Extract the query OE numbers, in input order.

    The identifier column is detected from the first row by QUERY_SYNONYMS
    (falling back to column 0); a detected header row is skipped. Empty cells
    and empty rows are dropped.
    """
    if not rows:
        return []

    detected = find_col_index(rows[0], QUERY_SYNONYMS)
    oe_col = max(detected, 0)
    start = 1 if detected != NOT_FOUND else 0

    queries = []
    for row in rows[start:]:
        if not row or oe_col >= len(row):
            continue
        value = cell_text(row[oe_col]).strip()
        if value:
            queries.append(value)
    return queries


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def _report(on_progress: Optional[ProgressCallback], message: str) -> None:
    if on_progress is None:
        return
    try:
        on_progress(message)
    except Exception as e:
        logger.warning(f"Progress callback failed: {e}")


def match_local(input_oe: str, reference_index: ReferenceIndex) -> Optional[ResultRow]:
    """Look the query up in the reference index; None on a miss or a too-short key."""
    key = normalize(input_oe)
    if len(key) < MIN_TOKEN_LENGTH:
        return None
    record = reference_index.get(key)
    if record is None:
        return None
    return ResultRow(
        input_oe=input_oe,
        xx_code=record.xx_code,
        application=record.application,
        year=record.year,
        oem=record.oem,
        drive=record.drive,
        picture=PICTURE_MATCHED if record.image else PICTURE_MISSING,
        image=record.image,
        price=record.price,
        product_name=record.product_name,
        source=SOURCE_LOCAL,
    )


async def resolve_one(
    input_oe: str,
    reference_index: ReferenceIndex,
    ai_search: AISearch = fetch_part_info,
    on_progress: Optional[ProgressCallback] = None,
    ai_delay: float = AI_CALL_DELAY,
) -> ResultRow:
    """
    Resolve a single query OE: local index first, AI search on a miss.

    Queries whose normalized key is shorter than MIN_TOKEN_LENGTH are marked
    invalid without an AI call.
    """
    local = match_local(input_oe, reference_index)
    if local is not None:
        return local

    row = ResultRow(input_oe=input_oe)
    if len(normalize(input_oe)) < MIN_TOKEN_LENGTH:
        logger.info(f"OE {input_oe!r} is too short to look up, skipping AI search")
        row.product_name = INVALID_MARKER
        row.vehicle_model = UNAVAILABLE_MARKER
        row.general_oe = UNAVAILABLE_MARKER
        row.source = SOURCE_INVALID
        return row

    _report(on_progress, f"OE {input_oe} not in reference, searching via AI...")
    try:
        if ai_delay > 0:
            await asyncio.sleep(ai_delay)
        info = await ai_search(input_oe, on_progress)
        row.product_name = info.product_name
        row.vehicle_model = info.vehicle_model
        row.general_oe = info.general_oe
        row.source = SOURCE_AI
    except Exception as e:
        logger.error(f"AI search failed for OE {input_oe}: {e}")
        row.product_name = AI_FAILED_MARKER
        row.vehicle_model = UNAVAILABLE_MARKER
        row.general_oe = UNAVAILABLE_MARKER
        row.source = SOURCE_FAILED
    return row


async def resolve_rows(
    queries: List[str],
    reference_index: ReferenceIndex,
    ai_search: AISearch = fetch_part_info,
    on_progress: Optional[ProgressCallback] = None,
    ai_delay: float = AI_CALL_DELAY,
) -> List[ResultRow]:
    """
    Resolve every query OE in order.

    Rows are processed one at a time so at most one AI request is in flight.
    A failed AI lookup only marks its own row.
    """
    results = []
    for input_oe in queries:
        results.append(await resolve_one(input_oe, reference_index, ai_search, on_progress, ai_delay))
    return results


async def process_files(
    reference_file,
    query_file,
    on_progress: Optional[ProgressCallback] = None,
    ai_search: AISearch = fetch_part_info,
    ai_delay: float = AI_CALL_DELAY,
) -> Tuple[List[ResultRow], ReferenceIndex]:
    """
    Full run: index the reference workbook, read the query list, resolve.

    Returns:
        - result rows in query order
        - the reference index (needed by the exporter for highlighting)

    Raises:
        ReferenceFormatError: the reference workbook has no OEM column.
    """
    _report(on_progress, "Loading reference database...")
    reference_index = await asyncio.to_thread(load_reference_index, reference_file)

    _report(on_progress, "Loading OE query list...")
    query_rows = await asyncio.to_thread(read_query_rows, query_file)
    queries = parse_query_list(query_rows)
    logger.info(f"Resolving {len(queries):,} query OE numbers")

    results = await resolve_rows(queries, reference_index, ai_search, on_progress, ai_delay)
    return results, reference_index


def summarize_results(results: List[ResultRow]) -> Dict[str, int]:
    """Count rows per source."""
    summary = {'total': len(results), SOURCE_LOCAL: 0, SOURCE_AI: 0, SOURCE_FAILED: 0, SOURCE_INVALID: 0}
    for row in results:
        summary[row.source] = summary.get(row.source, 0) + 1
    return summary
