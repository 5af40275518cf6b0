"""
Tests for the matching core:
- normalize() / cell_text() over plain, rich-text and computed cell values
- delimiter splitting and segment round-trips
- header row detection and synonym-based column resolution
- reference index token rules
- query list parsing
"""
import io
from types import SimpleNamespace

import pandas as pd
import pytest
from openpyxl.cell.rich_text import CellRichText, TextBlock
from openpyxl.cell.text import InlineFont

from matcher import (
    build_reference_index,
    cell_text,
    detect_reference_columns,
    find_col_index,
    load_reference_index,
    normalize,
    parse_query_list,
    read_query_rows,
    split_segments,
    split_tokens,
    ImageAttachment,
    ReferenceFormatError,
    COLUMN_SYNONYMS,
    HEADER_SCAN_ROWS,
    NOT_FOUND,
)

HEADER = ['XX CODE', 'Application', 'Year', 'OEM', 'Drive', 'Price', 'Product']


# ---------------------------------------------------------------------------
# Normalization
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("raw, expected", [
    ("12345-AB", "12345AB"),
    ("12345 ab", "12345AB"),
    ("AB-12 34", "AB1234"),
    ("  a.b/c_d ", "ABCD"),
    ("原厂-99X", "99X"),
    (None, ""),
    ("", ""),
    (12345, "12345"),
    (12345.0, "12345"),
    (float('nan'), ""),
])
def test_normalize(raw, expected):
    assert normalize(raw) == expected


def test_normalize_is_case_and_punctuation_insensitive():
    assert normalize("AB-12 34") == normalize("ab1234")
    assert normalize("12345-AB") == normalize("12345 ab")


@pytest.mark.parametrize("raw", ["12345-AB", "ab 12/cd", "", None, "  x-y-z  ", "Ünïcode-77", 98.5])
def test_normalize_is_idempotent(raw):
    once = normalize(raw)
    assert normalize(once) == once


def test_cell_text_rich_text_concatenates_runs():
    value = CellRichText([TextBlock(InlineFont(b=True), 'A123'), '-B'])
    assert cell_text(value) == 'A123-B'
    assert normalize(value) == 'A123B'


def test_cell_text_prefers_computed_result():
    assert cell_text(SimpleNamespace(result='C456', formula='=A1')) == 'C456'
    assert cell_text(SimpleNamespace(result=None)) == ''


def test_cell_text_text_wrapper():
    assert cell_text(SimpleNamespace(text='D789')) == 'D789'


# ---------------------------------------------------------------------------
# Tokenization
# ---------------------------------------------------------------------------

def test_split_tokens_broad_delimiters():
    text = "A123-B, C456/D789;E1|F22:G333\nH444，I555；J666、K777"
    assert split_tokens(text) == [
        'A123-B', 'C456', 'D789', 'E1', 'F22', 'G333', 'H444', 'I555', 'J666', 'K777',
    ]


@pytest.mark.parametrize("text", [
    "A123-B, C456/D789",
    "  leading and trailing  ",
    "x，y；z、w | v",
    "",
    "single",
    ",,;;",
])
def test_split_segments_round_trip(text):
    segments = split_segments(text)
    assert "".join(seg for seg, _ in segments) == text


def test_split_segments_marks_delimiters():
    assert split_segments("A1, B2") == [("A1", False), (", ", True), ("B2", False)]


# ---------------------------------------------------------------------------
# Header / column resolution
# ---------------------------------------------------------------------------

def test_find_col_index_substring_and_case():
    headers = [None, ' xx code ', 'Part OEM No.', 'product name']
    assert find_col_index(headers, COLUMN_SYNONYMS['oem']) == 2
    assert find_col_index(headers, COLUMN_SYNONYMS['xx_code']) == 1
    assert find_col_index(headers, COLUMN_SYNONYMS['product_name']) == 3
    assert find_col_index(headers, COLUMN_SYNONYMS['year']) == NOT_FOUND


def test_find_col_index_chinese_synonyms():
    headers = ['序号', '原厂编号', '广州价', '适用车型']
    assert find_col_index(headers, COLUMN_SYNONYMS['oem']) == 1
    assert find_col_index(headers, COLUMN_SYNONYMS['price']) == 2
    assert find_col_index(headers, COLUMN_SYNONYMS['application']) == 3


def test_detect_reference_columns_skips_title_rows():
    rows = [("Catalog 2026",), (), tuple(HEADER), ("X1", "Sedan", "2019", "A123", "FWD", 10, "Starter")]
    header_row, columns = detect_reference_columns(rows)
    assert header_row == 3
    assert columns == {
        'oem': 3, 'xx_code': 0, 'application': 1, 'year': 2,
        'drive': 4, 'price': 5, 'product_name': 6,
    }


def test_detect_reference_columns_missing_optional_columns():
    _, columns = detect_reference_columns([("OEM", "Notes")])
    assert columns['oem'] == 0
    assert columns['price'] == NOT_FOUND
    assert columns['xx_code'] == NOT_FOUND


def test_header_on_last_scanned_row_is_found():
    rows = [("",)] * (HEADER_SCAN_ROWS - 1) + [("OEM",)]
    header_row, _ = detect_reference_columns(rows)
    assert header_row == HEADER_SCAN_ROWS


def test_header_beyond_scan_window_is_fatal():
    rows = [("",)] * HEADER_SCAN_ROWS + [("OEM",)]
    with pytest.raises(ReferenceFormatError):
        detect_reference_columns(rows)


def test_no_identifier_header_is_fatal():
    rows = [("Name", "Price", "Year")] * 5
    with pytest.raises(ReferenceFormatError, match="OEM"):
        detect_reference_columns(rows)


# ---------------------------------------------------------------------------
# Reference index
# ---------------------------------------------------------------------------

def _index(data_rows, images=None):
    rows = [tuple(HEADER)] + [tuple(r) for r in data_rows]
    header_row, columns = detect_reference_columns(rows)
    return build_reference_index(rows, header_row, columns, images)


def test_every_qualifying_token_maps_to_same_record():
    index = _index([("X1", "Sedan", "2019", "A123-B, C456/D789", "FWD", 88.5, "Starter")])
    assert set(index) == {'A123B', 'C456', 'D789'}
    record = index['A123B']
    assert index['C456'] is record and index['D789'] is record
    assert record.oem == "A123-B, C456/D789"
    assert record.product_name == "Starter"
    assert record.price == 88.5
    assert record.image is None


def test_short_tokens_are_never_indexed():
    index = _index([("X1", "", "", "AB, 12, A-1, XYZ9", "", None, "Pump")])
    assert set(index) == {'XYZ9'}
    assert all(len(key) > 2 for key in index)


def test_rows_without_identifier_are_skipped():
    index = _index([
        ("X1", "Sedan", "2019", None, "FWD", 1, "Starter"),
        ("X2", "Coupe", "2020", "   ", "RWD", 2, "Alternator"),
    ])
    assert index == {}


def test_last_row_wins_on_token_collision():
    index = _index([
        ("X1", "", "", "A123", "", None, "First"),
        ("X2", "", "", "a-123", "", None, "Second"),
    ])
    assert index['A123'].product_name == "Second"


def test_missing_optional_columns_left_empty():
    rows = [("OEM",), ("Q999",)]
    header_row, columns = detect_reference_columns(rows)
    record = build_reference_index(rows, header_row, columns)['Q999']
    assert record.xx_code == "" and record.application == "" and record.drive == ""
    assert record.price is None


def test_image_attached_by_row_number():
    attachment = ImageAttachment(data=b'png', extension='png')
    index = _index([("X1", "", "", "A123", "", None, "Starter")], images={2: attachment})
    assert index['A123'].image is attachment


def test_load_reference_index_from_workbook(workbook_bytes, png_bytes):
    data = workbook_bytes(
        [["Catalog"], [], HEADER, ["X1", "Sedan", "2019", "A123-B, C456", "FWD", 120, "Starter"]],
        images={'H4': png_bytes()},
    )
    index = load_reference_index(io.BytesIO(data))
    assert set(index) == {'A123B', 'C456'}
    record = index['C456']
    assert record.xx_code == "X1"
    assert record.price == 120
    assert record.image is not None
    assert record.image.extension == 'png'
    assert record.image.data.startswith(b'\x89PNG')


def test_load_reference_index_without_oem_header(workbook_bytes):
    data = workbook_bytes([["Name", "Price"], ["Starter", 10]])
    with pytest.raises(ReferenceFormatError):
        load_reference_index(io.BytesIO(data))


# ---------------------------------------------------------------------------
# Query list
# ---------------------------------------------------------------------------

def test_parse_query_list_detects_column_and_skips_header():
    rows = [["No.", "OE Number"], [1, "a123b"], [2, None], [3, "  ZZZ999 "], []]
    assert parse_query_list(rows) == ["a123b", "ZZZ999"]


def test_parse_query_list_defaults_to_first_column():
    rows = [["a123b", "x"], ["ZZZ999", "y"]]
    assert parse_query_list(rows) == ["a123b", "ZZZ999"]


def test_parse_query_list_chinese_header():
    rows = [["备注", "查询编号"], ["n", "C456"]]
    assert parse_query_list(rows) == ["C456"]


def test_parse_query_list_empty():
    assert parse_query_list([]) == []


def test_read_query_rows_excel(workbook_bytes):
    data = workbook_bytes([["OE"], ["a123b"], [None], [12345]])
    rows = read_query_rows(io.BytesIO(data))
    assert parse_query_list(rows) == ["a123b", "12345"]


def test_read_query_rows_csv(tmp_path):
    path = tmp_path / "oe.csv"
    pd.DataFrame({'OE': ['a123b', 'ZZZ999']}).to_csv(path, index=False)
    rows = read_query_rows(str(path))
    assert parse_query_list(rows) == ["a123b", "ZZZ999"]
