"""
Headless OE matching run.

Matches an OE list against a reference workbook (AI fallback included) and
writes the highlighted Excel export.

Usage:
    python scripts/run_matching.py reference.xlsx oe_list.xlsx
    python scripts/run_matching.py reference.xlsx oe_list.csv -o outputs/result.xlsx

Requires GEMINI_API_KEY for OE numbers missing from the reference.
"""

import sys, os
_SCRIPT_DIR = os.path.dirname(os.path.abspath(__file__))
_PROJECT_ROOT = os.path.join(_SCRIPT_DIR, '..')
sys.path.insert(0, os.path.join(_PROJECT_ROOT, 'src'))
OUTPUT_DIR = os.path.join(_PROJECT_ROOT, 'outputs')

import argparse
import asyncio
import logging
import time

from excel_export import export_filename, export_to_excel
from matcher import process_files, summarize_results, ReferenceFormatError


def main():
    parser = argparse.ArgumentParser(description="Match OE numbers against a reference workbook.")
    parser.add_argument('reference', help="reference database (.xlsx)")
    parser.add_argument('oe_list', help="OE list to look up (.xlsx or .csv)")
    parser.add_argument('-o', '--output', help="output .xlsx path (default: outputs/匹配结果_<date>.xlsx)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    output_path = args.output or os.path.join(OUTPUT_DIR, export_filename())
    start_time = time.time()

    try:
        results, reference_index = asyncio.run(
            process_files(args.reference, args.oe_list, on_progress=print)
        )
    except ReferenceFormatError as e:
        print(f"ERROR: {e}")
        sys.exit(1)

    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    with open(output_path, 'wb') as f:
        f.write(export_to_excel(results, reference_index))

    summary = summarize_results(results)
    print(f"\nReference tokens: {len(reference_index):,}")
    print(f"Total OE:  {summary['total']:,}")
    print(f"  local:   {summary['local']:,}")
    print(f"  ai:      {summary['ai']:,}")
    print(f"  failed:  {summary['failed']:,}")
    print(f"  invalid: {summary['invalid']:,}")
    print(f"\nWrote {output_path}")
    print(f"Done in {time.time() - start_time:.1f}s")


if __name__ == '__main__':
    main()
