"""
W-2 Refund Estimator - Streamlit Widget
=======================================
Embeddable refund calculator.

Flow:
1. Upload a W-2 (JPG, PNG or PDF) -> AI reads Box 2 and Box 17
   or type the two boxes by hand
2. Estimated refund with a breakdown
3. Result and pending upload survive reruns for this session only
"""

import sys
import os

# Path setup for Streamlit Cloud
_current_file = os.path.abspath(__file__)
_backend_dir = os.path.dirname(_current_file)
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

import streamlit as st
import pandas as pd
from typing import Optional

from estimation_client import EstimationClient, ManualEstimator
from refund_models import (
    CachedDocument,
    EstimationState,
    NetworkError,
    RefundEstimate,
    ValidationError,
)
from refund_settings import load_widget_settings
from session_cache import create_session_cache


# =============================================================================
# PAGE CONFIGURATION
# =============================================================================

st.set_page_config(
    page_title="Tax Refund Calculator",
    page_icon="🧾",
    layout="centered",
    initial_sidebar_state="collapsed"
)

st.markdown("""
<style>
    .main .block-container {
        max-width: 560px;
        padding-top: 1.5rem;
    }

    .refund-card {
        background: #f0fdf4;
        border: 1px solid #bbf7d0;
        border-radius: 12px;
        padding: 1rem;
        text-align: center;
    }

    .refund-label {
        font-size: 0.8rem;
        color: #166534;
        font-weight: 500;
    }

    .refund-amount {
        font-size: 2.25rem;
        font-weight: 800;
        color: #15803d;
    }

    .session-note {
        font-size: 0.75rem;
        color: #9ca3af;
        text-align: center;
        margin-top: 0.9rem;
    }

    #MainMenu {visibility: hidden;}
    footer {visibility: hidden;}
</style>
""", unsafe_allow_html=True)


# =============================================================================
# SESSION STATE INITIALIZATION
# =============================================================================

def init_session_state():
    """Build the client once per session and restore any cached work."""
    settings = load_widget_settings()

    if 'estimation_client' not in st.session_state:
        cache = create_session_cache(st.session_state, settings.cache_dir)
        client = EstimationClient(
            settings.api_base_url,
            cache,
            bearer_token=settings.bearer_token,
        )
        client.restore()
        st.session_state.estimation_client = client

    if 'manual_estimator' not in st.session_state:
        st.session_state.manual_estimator = ManualEstimator(settings.api_base_url)

    # Uploader widget value last handed to the client
    if 'last_upload_id' not in st.session_state:
        st.session_state.last_upload_id = None

init_session_state()


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def fmt_currency(amount: float) -> str:
    """Format number as currency."""
    return f"${amount:,.2f}"


def breakdown_frame(result: RefundEstimate) -> pd.DataFrame:
    return pd.DataFrame(
        [
            {"Box": "Box 2 (Federal)", "Withheld": fmt_currency(result.federal_withheld)},
            {"Box": "Box 17 (State)", "Withheld": fmt_currency(result.state_withheld)},
        ]
    ).set_index("Box")


def render_result(result: RefundEstimate, note: str):
    st.markdown(f"""
    <div class="refund-card">
        <div class="refund-label">Estimated Refund</div>
        <div class="refund-amount">{fmt_currency(result.estimated_refund)}</div>
    </div>
    """, unsafe_allow_html=True)

    if result.federal_withheld > 0 or result.state_withheld > 0:
        st.table(breakdown_frame(result))

    st.markdown(f'<div class="session-note">🔒 {note}</div>', unsafe_allow_html=True)


def sync_uploader(client: EstimationClient, uploaded_file) -> None:
    """Hand a newly picked or cleared uploader value to the client."""
    upload_id = getattr(uploaded_file, "file_id", None) if uploaded_file else None
    if upload_id == st.session_state.last_upload_id:
        return
    st.session_state.last_upload_id = upload_id

    doc: Optional[CachedDocument] = None
    if uploaded_file is not None:
        doc = CachedDocument(
            raw_bytes=uploaded_file.getvalue(),
            file_name=uploaded_file.name,
            mime_type=uploaded_file.type or "",
        )
    try:
        client.select_document(doc)
    except ValidationError:
        # client.error carries the message
        pass


# =============================================================================
# UPLOAD FLOW
# =============================================================================

def render_upload_flow(client: EstimationClient):
    if client.state == EstimationState.RESULT_READY and client.result is not None:
        render_result(client.result, "Saved locally — clears when you close the browser.")
        if st.button("Calculate with another document", use_container_width=True):
            client.reset()
            st.session_state.last_upload_id = None
            st.rerun()
        return

    st.caption("Upload your W-2 image and we'll extract Box 2 and Box 17 automatically.")

    uploaded_file = st.file_uploader(
        "Drag your W2 here",
        type=["jpg", "jpeg", "png", "pdf"],
        help="JPG, PNG or PDF",
    )
    sync_uploader(client, uploaded_file)

    if client.document is not None:
        if client.preview is not None:
            st.image(client.preview, caption="W2 preview", use_container_width=True)
        else:
            st.markdown(f"📄 **{client.document.file_name}**")

    label = "Processing W-2…" if client.state == EstimationState.SUBMITTING else "Calculate from W-2"
    if st.button(label, type="primary", disabled=not client.can_submit, use_container_width=True):
        with st.spinner("Processing W-2…"):
            client.submit()
        st.rerun()

    if client.error:
        st.error(client.error)

    st.markdown(
        '<div class="session-note">🔒 Your information is stored locally for this session only.</div>',
        unsafe_allow_html=True,
    )


# =============================================================================
# MANUAL ENTRY FLOW
# =============================================================================

def render_manual_flow(estimator: ManualEstimator):
    if estimator.result is not None:
        render_result(estimator.result, "Not saved — this result is lost on reload.")
        if st.button("Start over", key="manual_reset", use_container_width=True):
            estimator.reset()
            st.rerun()
        return

    with st.form("manual_entry"):
        federal = st.text_input("Box 2 — Federal income tax withheld", placeholder="0.00")
        state = st.text_input("Box 17 — State income tax withheld", placeholder="0.00")
        submitted = st.form_submit_button("Calculate", type="primary", use_container_width=True)

    if submitted:
        try:
            estimator.calculate(federal, state)
            st.rerun()
        except ValidationError as e:
            st.warning(str(e))
        except NetworkError as e:
            st.error(str(e))


# =============================================================================
# MAIN
# =============================================================================

st.markdown("### Tax Refund Calculator")

upload_tab, manual_tab = st.tabs(["📤 Upload W-2", "⌨️ Enter manually"])

with upload_tab:
    render_upload_flow(st.session_state.estimation_client)

with manual_tab:
    render_manual_flow(st.session_state.manual_estimator)
