"""
PartMatch — OE Number Matcher, Streamlit UI

Upload the reference database and an OE list; every OE is looked up in the
reference workbook first and searched with grounded Gemini when missing.
Results can be downloaded as a highlighted Excel file.

Run with:
    streamlit run src/app.py

Environment:
    GEMINI_API_KEY   key for the AI fallback search
    GEMINI_MODEL     optional model override
"""

import asyncio
import html
import logging

import pandas as pd
import streamlit as st

from excel_export import export_filename, export_to_excel, classify_segments, OEM_COLUMN, CROSS_REF_COLUMN
from matcher import (
    process_files,
    resolve_one,
    summarize_results,
    ReferenceFormatError,
    SOURCE_LOCAL,
    SOURCE_AI,
    SOURCE_FAILED,
    SOURCE_INVALID,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Page config
# ---------------------------------------------------------------------------
st.set_page_config(
    page_title="PartMatch OE Matcher",
    page_icon="🔧",
    layout="wide",
    initial_sidebar_state="expanded",
)

st.title("🔧 PartMatch OE Matcher")
st.markdown("**Reference database lookup with Google-grounded AI fallback**")

# ---------------------------------------------------------------------------
# Sidebar
# ---------------------------------------------------------------------------
st.sidebar.header("⚙️ Legend")
st.sidebar.markdown("🟢 **local** — found in the reference database")
st.sidebar.markdown("🔵 **ai** — filled in by the AI search")
st.sidebar.markdown("🔴 **failed** — AI search failed, row marked 检索失败")
st.sidebar.markdown("⚪ **invalid** — OE shorter than 3 characters, row marked 无效编号")
st.sidebar.divider()
st.sidebar.markdown("**Export highlighting:**")
st.sidebar.markdown("<span style='color:#FF0000'>**red**</span> — OEM token equal to the searched OE", unsafe_allow_html=True)
st.sidebar.markdown("<span style='color:#00B050'>**green**</span> — cross-reference OE found in the database", unsafe_allow_html=True)

# Columns shown in the preview table (image bytes are left out)
PREVIEW_COLUMNS = [
    ('输入 OE', 'input_oe'),
    ('XX 编码', 'xx_code'),
    ('适用车型', 'application'),
    ('年份', 'year'),
    ('OEM', 'oem'),
    ('驱动', 'drive'),
    ('图片', 'picture'),
    ('广州价', 'price'),
    ('产品名', 'product_name'),
    ('车型', 'vehicle_model'),
    ('通用OE', 'general_oe'),
    ('source', 'source'),
]


def results_to_dataframe(results) -> pd.DataFrame:
    return pd.DataFrame([
        {label: getattr(row, attr) for label, attr in PREVIEW_COLUMNS}
        for row in results
    ])


def highlight_html(text, column, input_oe, reference_index) -> str:
    """Same token classification as the Excel export, rendered as HTML spans."""
    colors = {'query': '#FF0000', 'reference': '#00B050'}
    out = []
    for segment, highlight in classify_segments(text or "", column, input_oe, reference_index):
        escaped = html.escape(segment)
        if highlight:
            out.append(f"<b style='color:{colors[highlight]}'>{escaped}</b>")
        else:
            out.append(escaped)
    return "".join(out)


def reset_session() -> None:
    """Clear uploads, results and the single-OE box."""
    st.session_state.pop('match_run', None)
    st.session_state.pop('test_oe', None)
    # Uploaders cannot be assigned, so they get fresh keys
    st.session_state['upload_generation'] = st.session_state.get('upload_generation', 0) + 1


def color_source(val):
    if val == SOURCE_LOCAL:
        return 'background-color: #d4edda; color: #155724'
    elif val == SOURCE_AI:
        return 'background-color: #dbeafe; color: #1e3a8a'
    elif val == SOURCE_FAILED:
        return 'background-color: #f8d7da; color: #721c24'
    elif val == SOURCE_INVALID:
        return 'background-color: #e9ecef; color: #495057'
    return ''


# =========================================================================
# STEP 1 — Upload files
# =========================================================================
st.header("Step 1: Upload Files")
upload_generation = st.session_state.get('upload_generation', 0)
c1, c2 = st.columns(2)
with c1:
    ref_upload = st.file_uploader(
        "1. Reference database (.xlsx) — OEM, XX CODE, details and price",
        type=["xlsx"], key=f"ref_upload_{upload_generation}",
    )
with c2:
    oe_upload = st.file_uploader(
        "2. OE list (.xlsx / .csv) — OE numbers to look up",
        type=["xlsx", "csv"], key=f"oe_upload_{upload_generation}",
    )

# =========================================================================
# STEP 2 — Run matching
# =========================================================================
st.divider()
rc1, rc2 = st.columns([4, 1])
with rc1:
    run_btn = st.button(
        "🚀 Start Matching", type="primary", use_container_width=True,
        disabled=ref_upload is None or oe_upload is None,
    )
with rc2:
    st.button("🔄 Reset", use_container_width=True, key="reset_btn", on_click=reset_session)

if run_btn:
    status = st.status("Initializing matching engine...", expanded=False)

    def on_progress(msg: str) -> None:
        status.update(label=msg)

    try:
        results, reference_index = asyncio.run(process_files(ref_upload, oe_upload, on_progress=on_progress))
    except ReferenceFormatError as e:
        status.update(label="Failed", state="error")
        st.error(str(e))
        st.stop()
    except Exception as e:
        logger.exception("Matching run failed")
        status.update(label="Failed", state="error")
        st.error(f"Error while processing files: {e}")
        st.stop()

    status.update(label=f"✅ Matched {len(results):,} OE numbers", state="complete")
    st.session_state['match_run'] = {
        'results': results,
        'reference_index': reference_index,
    }

# =========================================================================
# STEP 3 — Results
# =========================================================================
if 'match_run' in st.session_state:
    results = st.session_state['match_run']['results']
    reference_index = st.session_state['match_run']['reference_index']

    st.divider()
    st.header("Step 2: Results")

    summary = summarize_results(results)
    total = summary['total'] or 1
    ca, cb, cc, cd, ce = st.columns(5)
    ca.metric("Total", summary['total'])
    cb.metric("✅ Local", summary[SOURCE_LOCAL], f"{summary[SOURCE_LOCAL]/total*100:.1f}%")
    cc.metric("🔵 AI", summary[SOURCE_AI], f"{summary[SOURCE_AI]/total*100:.1f}%")
    cd.metric("❌ Failed", summary[SOURCE_FAILED], f"{summary[SOURCE_FAILED]/total*100:.1f}%")
    ce.metric("⚪ Invalid", summary[SOURCE_INVALID], f"{summary[SOURCE_INVALID]/total*100:.1f}%")

    if results:
        df_results = results_to_dataframe(results)
        st.dataframe(
            df_results.style.map(color_source, subset=['source']),
            use_container_width=True, hide_index=True,
        )

        with st.expander("Highlighted OEM / cross-reference preview"):
            for row in results[:100]:
                oem_html = highlight_html(row.oem, OEM_COLUMN, row.input_oe, reference_index)
                cross_html = highlight_html(row.general_oe, CROSS_REF_COLUMN, row.input_oe, reference_index)
                st.markdown(
                    f"**{html.escape(row.input_oe)}** — OEM: {oem_html or '–'} | 通用OE: {cross_html or '–'}",
                    unsafe_allow_html=True,
                )
                if row.image is not None:
                    st.image(row.image.data, width=227)

        st.download_button(
            label="📥 Download Highlighted Excel",
            data=export_to_excel(results, reference_index),
            file_name=export_filename(),
            mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
            type="primary",
            use_container_width=True,
        )
    else:
        st.warning("No OE numbers found in the uploaded list.")

    # ------------------------------------------------------------------
    # Test Single OE
    # ------------------------------------------------------------------
    st.divider()
    st.subheader("🧪 Test Single OE")
    tc1, tc2 = st.columns([4, 1])
    with tc1:
        test_oe = st.text_input("OE number", value="", key="test_oe")
    with tc2:
        st.write("")
        st.write("")
        test_btn = st.button("Look Up", use_container_width=True)

    if test_btn and test_oe.strip():
        with st.spinner("Searching..."):
            row = asyncio.run(resolve_one(test_oe.strip(), reference_index))
        st.markdown(f"**Source:** `{row.source}`")
        st.dataframe(results_to_dataframe([row]), use_container_width=True, hide_index=True)

# ---------------------------------------------------------------------------
# Footer
# ---------------------------------------------------------------------------
st.divider()
st.caption(
    "PartMatch OE Matcher — reference lookup first, Google-grounded Gemini search for misses. "
    "Set GEMINI_API_KEY to enable the AI fallback."
)
