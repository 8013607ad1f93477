import hashlib
import io
import logging
from datetime import date, datetime, timedelta

import streamlit as st
from PIL import Image

from attendance_store import JsonFileStore
from errors import AttendanceError, CredentialMissing
from excel_generator import generate_excel, history_frame, student_report
from recognition import Phase
from secret_store import EnvSecretStore, MemorySecretStore
from services import AttendanceSession
from settings import Settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger(__name__)

st.set_page_config(
    page_title="Sign-in Sheet Attendance",
    page_icon="📋",
    layout="wide"
)

st.title("📋 Sign-in Sheet Attendance")
st.markdown("*Photograph the class sign-in sheet; names are matched against the roster*")

settings = Settings.from_env()

# ── API Key: Streamlit Cloud secrets → local .env → sidebar input ────────────
_key_from_secrets = ""
try:
    _key_from_secrets = st.secrets.get("GEMINI_API_KEY", "")
except Exception:
    _key_from_secrets = ""
_key_from_env = EnvSecretStore(str(settings.env_file)).get_credential()
_key_auto = _key_from_secrets or _key_from_env

with st.sidebar:
    st.header("🔑 Gemini Fallback")
    if _key_auto:
        st.success("✅ API key loaded automatically.")
        api_key_input = _key_auto
    else:
        api_key_input = st.text_input(
            "Gemini API Key",
            type="password",
            placeholder="AIzaSy...",
            help="Used only when local OCR can't read the sheet well enough."
        )
        if api_key_input and st.button("💾 Remember key in .env"):
            try:
                EnvSecretStore(str(settings.env_file)).set_credential(api_key_input)
                st.success("Key saved.")
            except AttendanceError as e:
                st.error(f"❌ {e}")
    if _key_from_env and st.button("🗑️ Forget stored key"):
        EnvSecretStore(str(settings.env_file)).delete_credential()
        st.rerun()
    auto_fallback = st.toggle("Use Gemini automatically", value=settings.auto_fallback)


@st.cache_resource
def shared_store(path: str) -> JsonFileStore:
    """One store per file for the whole server, shared by every browser session."""
    return JsonFileStore(path)


# ── Session state ────────────────────────────────────────────────────────────
if "session" not in st.session_state:
    st.session_state.session = AttendanceSession.from_settings(
        settings, secrets=MemorySecretStore(api_key_input),
        kv=shared_store(str(settings.store_path)),
    )
session: AttendanceSession = st.session_state.session
session.secrets.set_credential(api_key_input or "")

if st.session_state.get("auto_fallback") != auto_fallback or "coordinator" not in st.session_state:
    st.session_state.coordinator = session.new_coordinator(auto_fallback=auto_fallback)
    st.session_state.auto_fallback = auto_fallback
    st.session_state.image_digest = None
coordinator = st.session_state.coordinator

tab_take, tab_history = st.tabs(["📷 Take Attendance", "🗓️ History"])

with tab_take:
    attendance_day = st.date_input("Attendance date", value=date.today())
    existing = session.store.get_attendance_for_date(attendance_day)
    if existing:
        st.info(f"Records already exist for {attendance_day}; saving will update them.")
        if st.button("Load saved attendance"):
            coordinator.load_existing(existing)

    up_col, cam_col = st.columns(2)
    with up_col:
        uploaded_file = st.file_uploader("Upload sign-in sheet", type=["jpg", "jpeg", "png"])
    with cam_col:
        camera_image = st.camera_input("Or capture it")

    image_bytes = None
    if uploaded_file:
        image_bytes = uploaded_file.getvalue()
    elif camera_image:
        image_bytes = camera_image.getvalue()

    digest = hashlib.sha1(image_bytes).hexdigest() if image_bytes else None
    if digest != st.session_state.image_digest:
        coordinator.select_image(image_bytes)
        st.session_state.image_digest = digest

    if image_bytes:
        try:
            st.image(Image.open(io.BytesIO(image_bytes)), caption="Sign-in sheet", width=480)
        except Exception as e:
            st.warning(f"Could not preview image: {e}")

        c1, c2 = st.columns(2)
        if c1.button("🔍 Read names", type="primary", use_container_width=True,
                     disabled=coordinator.state.busy):
            with st.spinner("Reading the sheet..."):
                coordinator.process_image()
        if c2.button("🤖 Ask Gemini", use_container_width=True,
                     disabled=coordinator.state.busy or not session.secrets.get_credential()):
            with st.spinner("Asking Gemini about the remaining names..."):
                coordinator.request_fallback()

    snap = coordinator.state

    if snap.local_error is not None:
        st.warning(f"Local OCR: {snap.local_error}")

    if snap.phase is Phase.ESCALATION_OFFERED:
        st.warning("⚠️ Local OCR results look unreliable. Try Gemini on the students still absent?")
        o1, o2 = st.columns(2)
        if o1.button("Yes, use Gemini", use_container_width=True):
            with st.spinner("Asking Gemini..."):
                coordinator.accept_escalation()
            st.rerun()
        if o2.button("No, keep these results", use_container_width=True):
            coordinator.decline_escalation()
            st.rerun()

    if isinstance(snap.error, CredentialMissing):
        st.error("❌ Gemini API key is missing. Add it in the sidebar.")
    elif snap.error is not None:
        st.error(f"❌ {snap.error}")

    if snap.mismatch:
        st.warning(
            f"⚠️ {snap.detected_count} names were read but {snap.present_count} students "
            "are marked present. Please review the list."
        )

    st.subheader(f"Students ({snap.present_count}/{len(snap.presence)} present)")
    m1, m2 = st.columns(2)
    if m1.button("Mark all present", disabled=snap.busy):
        coordinator.mark_all_present()
        st.rerun()
    if m2.button("Mark all absent", disabled=snap.busy):
        coordinator.mark_all_absent()
        st.rerun()

    for student in session.roster:
        present = snap.presence.get(student.roll_number, False)
        score = snap.scores.get(student.roll_number)
        label = f"{student.name} ({student.roll_number})"
        if score is not None:
            label += f" · match {score:.0%}"
        checked = st.checkbox(label, value=present, key=f"p_{student.roll_number}_{snap.image_id}_{present}")
        if checked != present:
            coordinator.toggle(student.roll_number)
            st.rerun()

    can_save = snap.phase in (Phase.DECIDED, Phase.IDLE)
    if st.button("💾 Save attendance", type="primary", disabled=not can_save):
        decision, _ = coordinator.final_decision()
        when = datetime.combine(attendance_day, datetime.now().time())
        try:
            saved, updated = session.save(when, decision)
            st.success(f"✅ {'Updated' if updated else 'Saved'} {len(saved)} records for {attendance_day}")
        except AttendanceError as e:
            st.error(f"❌ Save failed: {e}")

with tab_history:
    end = st.date_input("To", value=date.today(), key="hist_to")
    start = st.date_input("From", value=end - timedelta(days=settings.retention_days), key="hist_from")
    records = session.store.records_in_range(start, end)
    if not records:
        st.info("No attendance recorded in this range.")
    else:
        st.dataframe(history_frame(records, session.roster), use_container_width=True)
        st.subheader("Summary")
        st.dataframe(student_report(records, session.roster), use_container_width=True)
        st.download_button(
            label="⬇️ Download Excel Report",
            data=generate_excel(records, session.roster),
            file_name=f"attendance_{start}_{end}.xlsx",
            mime="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        )

st.divider()
st.caption("Sign-in Sheet Attendance | Local OCR with Gemini Vision fallback")
