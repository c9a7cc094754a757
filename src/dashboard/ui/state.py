"""Стан сесії дашборду: значення за замовчуванням і скидання фільтрів."""

from __future__ import annotations

import os

import streamlit as st

# monitor and dashboard deployed side by side → refresh on by default
_LIVE_MODE = os.environ.get("SECPIPE_LIVE_MODE", "") == "1"

# multiselect filters; the matching "_*_opts" keys hold the offered options
FILTER_KEYS: dict[str, str] = {
    "f_severities": "_sev_opts",
    "f_statuses": "_status_opts",
    "f_titles": "_title_opts",
}

_DEFAULTS: dict[str, object] = {
    "f_escalated": False,
    "f_horizon": 0.0,
    "auto_refresh": _LIVE_MODE,
    "refresh_interval": 5,
    "display_tz": os.environ.get("SECPIPE_DISPLAY_TZ", "UTC"),
}


def init_state() -> None:
    for key, value in _DEFAULTS.items():
        st.session_state.setdefault(key, value)


def reset_filters() -> None:
    """Callback кнопки "Reset filters": усі опції знову вибрані."""
    for key, opts_key in FILTER_KEYS.items():
        st.session_state[key] = list(st.session_state.get(opts_key, []))
    st.session_state["f_escalated"] = _DEFAULTS["f_escalated"]
    st.session_state["f_horizon"] = _DEFAULTS["f_horizon"]
