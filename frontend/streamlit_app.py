from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

import requests
import streamlit as st


def _get_api_base() -> str:
    # Prefer env var so we don't require secrets.toml to exist.
    env = os.getenv("API_BASE")
    if env:
        return env.rstrip("/")
    try:
        # st.secrets raises if there is no secrets file at all, so guard it.
        return str(st.secrets.get("API_BASE", "http://127.0.0.1:8000")).rstrip("/")
    except Exception:
        return "http://127.0.0.1:8000"


API_BASE = _get_api_base()
TERMINAL = {"Completed", "Failed", "Cancelled"}
LOG_TAIL_LINES = 200


def _detail(r: requests.Response) -> str:
    try:
        return str(r.json().get("detail", r.text))
    except ValueError:
        return r.text


def api_get(path: str) -> Any:
    r = requests.get(f"{API_BASE}{path}", timeout=60)
    r.raise_for_status()
    return r.json()


def api_get_text(path: str) -> str:
    r = requests.get(f"{API_BASE}{path}", timeout=60)
    r.raise_for_status()
    return r.text


def api_post_json(path: str, payload: Optional[Dict[str, Any]] = None) -> Any:
    r = requests.post(f"{API_BASE}{path}", json=payload or {}, timeout=60)
    if not r.ok:
        raise RuntimeError(_detail(r))
    return r.json()


def api_post_files(path: str, files: List[tuple]) -> Any:
    r = requests.post(f"{API_BASE}{path}", files=files, timeout=3600)
    if not r.ok:
        raise RuntimeError(_detail(r))
    return r.json()


def _rerun() -> None:
    # Compatible rerun for new/old Streamlit versions.
    fn = getattr(st, "rerun", None) or getattr(st, "experimental_rerun", None)
    if fn:
        fn()


st.set_page_config(page_title="Postgres Explorer", layout="wide")
st.title("Postgres Explorer")
st.caption("Restore dumps into a PostgreSQL server, export databases, and follow the tools' output live.")

# -----------------
# Connections
# -----------------
with st.sidebar:
    st.header("Connection")
    try:
        endpoints = api_get("/endpoints")
    except requests.RequestException as e:
        st.error(f"Backend not reachable at {API_BASE}: {e}")
        st.stop()

    labels = {str(c["connection_id"]): f"{c['name']} ({c['host']}:{c['port']}/{c['database']})" for c in endpoints}
    connection_ref = st.selectbox(
        "Saved connections",
        options=list(labels),
        format_func=lambda k: labels[k],
        index=0 if labels else None,
        placeholder="Add a connection below",
    )
    if connection_ref:
        c1, c2 = st.columns(2)
        if c1.button("Test"):
            result = api_post_json(f"/endpoints/{connection_ref}/test")
            if result["success"]:
                st.success(f"{result['message']} (server {result.get('version') or 'unknown'})")
            else:
                st.error(result["message"])
        if c2.button("Delete"):
            requests.delete(f"{API_BASE}/endpoints/{connection_ref}", timeout=30)
            _rerun()

    with st.expander("Add connection", expanded=not labels):
        with st.form("new_connection"):
            name = st.text_input("Name")
            host = st.text_input("Host", value="localhost")
            port = st.number_input("Port", min_value=1, max_value=65535, value=5432)
            database = st.text_input("Database", value="postgres")
            username = st.text_input("Username", value="postgres")
            password = st.text_input("Password", type="password")
            ssl_mode = st.selectbox("SSL mode", ["", "disable", "prefer", "require", "verify-ca", "verify-full"])
            search_path = st.text_input("Search path (optional)")
            if st.form_submit_button("Save"):
                try:
                    api_post_json(
                        "/endpoints",
                        {
                            "name": name or host,
                            "host": host,
                            "port": int(port),
                            "database": database,
                            "username": username or None,
                            "password": password or None,
                            "ssl_mode": ssl_mode or None,
                            "search_path": search_path or None,
                        },
                    )
                    _rerun()
                except RuntimeError as e:
                    st.error(f"Could not save connection: {e}")

if not connection_ref:
    st.info("Add a connection in the sidebar to get started.")
    st.stop()

job_state = st.session_state.setdefault("job", {})
import_tab, export_tab, history_tab = st.tabs(["Import", "Export", "History"])

# -----------------
# Import
# -----------------
with import_tab:
    col1, col2 = st.columns(2, gap="large")
    upload_state = st.session_state.setdefault("upload", {})

    with col1:
        st.header("1) Upload a dump")
        dump = st.file_uploader(
            "SQL script, custom-format or tar-format dump",
            accept_multiple_files=False,
            type=["sql", "dump", "backup", "tar", "pgdump"],
        )
        if st.button("Upload to backend", disabled=dump is None):
            with st.spinner("Uploading..."):
                try:
                    resp = api_post_files(
                        "/maintenance/import/upload",
                        [("file", (dump.name, dump.getvalue(), "application/octet-stream"))],
                    )
                except RuntimeError as e:
                    st.error(f"Upload rejected: {e}")
                else:
                    upload_state.clear()
                    upload_state.update(resp)
        if upload_state:
            st.success(f"Uploaded {upload_state['file_size']} bytes, detected format: {upload_state['format']}")

    with col2:
        st.header("2) Restore options")
        target_database = st.text_input("Target database", help="Defaults to the connection's database.")
        fmt = upload_state.get("format", "plain")
        single_transaction = st.checkbox("Single transaction (stop on first error)")
        verbose = st.checkbox("Verbose output")
        clean = create_db = data_only = schema_only = disable_triggers = False
        if fmt != "plain":
            clean = st.checkbox("Clean (drop objects before recreating)")
            create_db = st.checkbox("Create the database before restoring")
            data_only = st.checkbox("Data only")
            schema_only = st.checkbox("Schema only")
            disable_triggers = st.checkbox("Disable triggers during data restore")

        payload: Dict[str, Any] = {
            "file_path": upload_state.get("file_path", ""),
            "format": fmt,
            "connection_ref": connection_ref,
            "target_database": target_database,
            "clean": clean,
            "create_db": create_db,
            "data_only": data_only,
            "schema_only": schema_only,
            "disable_triggers": disable_triggers,
            "single_transaction": single_transaction,
            "verbose": verbose,
        }
        if upload_state:
            try:
                st.code(api_post_json("/maintenance/import/preview", payload)["command"], language="bash")
            except RuntimeError as e:
                st.warning(f"Preview unavailable: {e}")

        if st.button("Start import", type="primary", disabled=not upload_state):
            try:
                resp = api_post_json("/maintenance/import", payload)
            except RuntimeError as e:
                st.error(f"Could not start import: {e}")
            else:
                job_state.clear()
                job_state.update(resp)
                st.success(f"Job started: {resp['job_id']}")

# -----------------
# Export
# -----------------
with export_tab:
    st.header("Export a database")
    ex_database = st.text_input("Database", key="export_database", help="Defaults to the connection's database.")
    ex_scope = st.selectbox("Scope", ["full", "schema", "data", "tables"])
    ex_format = st.selectbox("Format", ["custom", "plain", "tar"])
    ex_tables = st.text_input("Tables (comma-separated)", disabled=ex_scope != "tables")
    ex_exclude = st.text_input("Exclude tables matching (comma-separated patterns)")
    c1, c2, c3 = st.columns(3)
    ex_compress = c1.checkbox("Compress", disabled=ex_format == "tar")
    ex_owner = c1.checkbox("Include ownership")
    ex_drop = c2.checkbox("Include DROP statements")
    ex_create = c2.checkbox("Include CREATE DATABASE")
    ex_verbose = c3.checkbox("Verbose output", key="export_verbose")
    if st.button("Start export", type="primary"):
        try:
            resp = api_post_json(
                "/maintenance/export",
                {
                    "connection_ref": connection_ref,
                    "database": ex_database,
                    "scope": ex_scope,
                    "format": ex_format,
                    "compress": ex_compress,
                    "include_ownership": ex_owner,
                    "include_drop": ex_drop,
                    "include_create_db": ex_create,
                    "verbose": ex_verbose,
                    "exclude_patterns": ex_exclude or None,
                    "selected_tables": [t.strip() for t in ex_tables.split(",") if t.strip()],
                },
            )
        except RuntimeError as e:
            st.error(f"Could not start export: {e}")
        else:
            job_state.clear()
            job_state.update(resp)
            st.success(f"Job started: {resp['job_id']}")

# -----------------
# History
# -----------------
with history_tab:
    st.header("Recent jobs")
    for job in api_get("/maintenance/jobs"):
        cols = st.columns([3, 1, 1, 1])
        cols[0].write(f"`{job['job_id']}` {job['created_at']}")
        cols[1].write(job["status"])
        cols[2].link_button("Log", job["log_url"])
        if cols[3].button("Follow", key=f"follow_{job['job_id']}"):
            job_state.clear()
            job_state["job_id"] = job["job_id"]


# -----------------
# Monitor
# -----------------
@st.fragment(run_every=2)
def monitor(job_id: str) -> None:
    try:
        status = api_get(f"/maintenance/jobs/{job_id}/status")
    except requests.HTTPError:
        st.warning("Job no longer exists.")
        return
    state = status["status"]
    st.write(f"**Job:** `{job_id}` &nbsp;•&nbsp; **Status:** {state}")
    if status.get("command"):
        st.code(status["command"], language="bash")

    try:
        transcript = api_get_text(f"/maintenance/jobs/{job_id}/download-log")
    except requests.HTTPError:
        transcript = ""
    lines = transcript.splitlines()[-LOG_TAIL_LINES:]
    st.code("\n".join(lines) or "(waiting for output)", language="text")

    c1, c2, c3 = st.columns(3)
    if state not in TERMINAL and c1.button("Cancel job"):
        try:
            api_post_json(f"/maintenance/jobs/{job_id}/cancel")
        except RuntimeError as e:
            st.error(f"Could not cancel: {e}")
    c2.link_button("Download log", status["log_url"])
    if status.get("download_url"):
        c3.link_button("Download dump", status["download_url"], type="primary")

    if state == "Completed":
        st.success("Job completed.")
    elif state == "Failed":
        st.error("The job failed.")
        with st.expander("Show error details", expanded=True):
            st.code(str(status.get("error")))
    elif state == "Cancelled":
        st.warning("Job cancelled.")


if job_state.get("job_id"):
    st.divider()
    st.header("3) Monitor progress")
    monitor(job_state["job_id"])
