"""
Highlighted Excel export of matching results.

Layout:
    - One sheet, fixed 11 columns (EXPORT_COLUMNS), bold shaded header
    - Data rows are tall enough for the embedded part picture
    - OEM / 通用OE cells are rich text: the cell text is split into token and
      delimiter segments (delimiters kept verbatim) and tokens are colored:
        * red:   OEM token equal to the searched OE
        * green: cross-reference token that exists in the reference index
"""

import io
import logging
from datetime import date
from typing import List, Optional

from openpyxl import Workbook
from openpyxl.cell.rich_text import CellRichText, TextBlock
from openpyxl.cell.text import InlineFont
from openpyxl.drawing.image import Image as XLImage
from openpyxl.drawing.spreadsheet_drawing import AnchorMarker, OneCellAnchor
from openpyxl.drawing.xdr import XDRPositiveSize2D
from openpyxl.styles import Alignment, Font, PatternFill
from openpyxl.utils import get_column_letter
from openpyxl.utils.units import pixels_to_EMU

from matcher import ReferenceIndex, ResultRow, normalize, split_segments

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Layout constants
# ---------------------------------------------------------------------------
SHEET_TITLE = "匹配结果"

# (header, ResultRow attribute, column width)
EXPORT_COLUMNS = [
    ('输入 OE', 'input_oe', 15),
    ('XX 编码', 'xx_code', 15),
    ('适用车型', 'application', 35),
    ('年份', 'year', 15),
    ('OEM', 'oem', 35),
    ('驱动', 'drive', 15),
    ('图片', 'picture', 34),
    ('广州价', 'price', 15),
    ('产品名', 'product_name', 35),
    ('车型', 'vehicle_model', 35),
    ('通用OE', 'general_oe', 35),
]
OEM_COLUMN = 'oem'
CROSS_REF_COLUMN = 'general_oe'
PICTURE_COLUMN = 'picture'

HEADER_FILL = PatternFill(fill_type='solid', fgColor='FFF1F5F9')
HEADER_HEIGHT = 25
ROW_HEIGHT = 80
IMAGE_WIDTH = 227
IMAGE_HEIGHT = 81
IMAGE_LEFT_OFFSET = 12      # pixels from the left border of the picture cell

QUERY_MATCH_FONT = InlineFont(color='FFFF0000', b=True)
REFERENCE_MATCH_FONT = InlineFont(color='FF00B050', b=True)

CELL_ALIGNMENT = Alignment(horizontal='center', vertical='center', wrap_text=True)


def export_filename(day: Optional[date] = None) -> str:
    """Default download name, e.g. 匹配结果_2026-01-31.xlsx"""
    day = day or date.today()
    return f"{SHEET_TITLE}_{day.isoformat()}.xlsx"


def classify_segments(
    text: str,
    column: str,
    input_oe: str,
    reference_index: ReferenceIndex,
) -> List[tuple]:
    """
    Split cell text into (segment, highlight) pairs.

    highlight is 'query' for an OEM token equal to the searched OE,
    'reference' for a cross-reference token known to the reference index,
    or None.
    """
    query_key = normalize(input_oe)
    classified = []
    for segment, is_delimiter in split_segments(text):
        highlight = None
        if not is_delimiter:
            key = normalize(segment)
            if column == OEM_COLUMN and key and key == query_key:
                highlight = 'query'
            elif column == CROSS_REF_COLUMN and key in reference_index:
                highlight = 'reference'
        classified.append((segment, highlight))
    return classified


def build_rich_text(
    text: str,
    column: str,
    input_oe: str,
    reference_index: ReferenceIndex,
) -> CellRichText:
    fonts = {'query': QUERY_MATCH_FONT, 'reference': REFERENCE_MATCH_FONT}
    parts = []
    for segment, highlight in classify_segments(text, column, input_oe, reference_index):
        if highlight:
            parts.append(TextBlock(fonts[highlight], segment))
        else:
            parts.append(segment)
    return CellRichText(parts)


def _embed_image(worksheet, row: ResultRow, col_idx: int, row_idx: int) -> None:
    try:
        img = XLImage(io.BytesIO(row.image.data))
    except Exception as e:
        logger.warning(f"Could not embed picture for OE {row.input_oe}: {e}")
        return
    img.width, img.height = IMAGE_WIDTH, IMAGE_HEIGHT
    marker = AnchorMarker(col=col_idx, colOff=pixels_to_EMU(IMAGE_LEFT_OFFSET), row=row_idx, rowOff=0)
    size = XDRPositiveSize2D(pixels_to_EMU(IMAGE_WIDTH), pixels_to_EMU(IMAGE_HEIGHT))
    img.anchor = OneCellAnchor(_from=marker, ext=size)
    worksheet.add_image(img)


def build_workbook(results: List[ResultRow], reference_index: ReferenceIndex) -> Workbook:
    """Build the export workbook for a list of result rows."""
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE

    for col_idx, (header, _, width) in enumerate(EXPORT_COLUMNS, start=1):
        cell = ws.cell(row=1, column=col_idx, value=header)
        cell.font = Font(bold=True)
        cell.fill = HEADER_FILL
        cell.alignment = Alignment(horizontal='center', vertical='center')
        ws.column_dimensions[get_column_letter(col_idx)].width = width
    ws.row_dimensions[1].height = HEADER_HEIGHT

    for offset, row in enumerate(results):
        excel_row = offset + 2
        ws.row_dimensions[excel_row].height = ROW_HEIGHT

        for col_idx, (_, attr, _) in enumerate(EXPORT_COLUMNS, start=1):
            cell = ws.cell(row=excel_row, column=col_idx)
            cell.alignment = CELL_ALIGNMENT

            if attr == PICTURE_COLUMN and row.image is not None:
                # 0-based anchor coordinates
                _embed_image(ws, row, col_idx - 1, excel_row - 1)
                continue

            value = getattr(row, attr)
            if attr in (OEM_COLUMN, CROSS_REF_COLUMN):
                text = "" if value is None else str(value)
                if text:
                    cell.value = build_rich_text(text, attr, row.input_oe, reference_index)
            else:
                cell.value = value

    return wb


def export_to_excel(results: List[ResultRow], reference_index: ReferenceIndex) -> bytes:
    """Render results as .xlsx bytes, ready for download or writing to disk."""
    wb = build_workbook(results, reference_index)
    output = io.BytesIO()
    wb.save(output)
    logger.info(f"Exported {len(results):,} rows")
    return output.getvalue()

