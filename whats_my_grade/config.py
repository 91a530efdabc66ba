import os
from typing import Any, Dict, List

import streamlit as st


OPENAI_DEFAULTS: Dict[str, Any] = {
    "api_key": "",
    "model": "gpt-4o-mini",
    "max_tokens": 1000,
    "temperature": 0.3,
}

GMAIL_DEFAULTS: Dict[str, Any] = {
    "access_token": "",
    "keywords": [
        "assignment",
        "homework",
        "due date",
        "project",
        "exam",
        "quiz",
        "midterm",
        "final",
        "problem set",
        "syllabus",
    ],
    "max_results": 50,
    "default_days": 30,
    "max_workers": 8,
}

# Keys typed into the Settings tab live only in the browser session
SESSION_OVERRIDES_KEY = "_config_overrides"


def _secret_section(name: str) -> Dict[str, Any]:
    try:
        s = st.secrets.get(name, {})
    except Exception:
        return {}
    return dict(s) if hasattr(s, "keys") else {}


def _secret_flat(key: str) -> Any:
    try:
        value = st.secrets.get(key)
    except Exception:
        value = None
    if value is None:
        value = os.environ.get(key)
    return value


def _lookup(section: str, key: str, flat_key: str, default: Any) -> Any:
    """
    Supports BOTH secrets formats:

    A) Nested:
      [openai]
      api_key = "..."

    B) Flat:
      OPENAI_API_KEY = "..."

    Environment variables with the flat name are used last.
    """
    overrides = _session_overrides().get(section, {})
    if overrides.get(key) not in (None, ""):
        return overrides[key]

    nested = _secret_section(section)
    if nested.get(key) not in (None, ""):
        return nested[key]

    flat = _secret_flat(flat_key)
    if flat not in (None, ""):
        return flat
    return default


def _session_overrides() -> Dict[str, Dict[str, Any]]:
    try:
        return st.session_state.get(SESSION_OVERRIDES_KEY) or {}
    except Exception:
        return {}


def set_session_override(section: str, key: str, value: Any) -> None:
    overrides = dict(_session_overrides())
    overrides.setdefault(section, {})
    overrides[section] = {**overrides[section], key: value}
    st.session_state[SESSION_OVERRIDES_KEY] = overrides


def _as_list(x: Any, default: List[str]) -> List[str]:
    if isinstance(x, str):
        parts = [p.strip() for p in x.split(",")]
        return [p for p in parts if p] or list(default)
    if isinstance(x, (list, tuple)):
        return [str(p).strip() for p in x if str(p).strip()] or list(default)
    return list(default)


def _as_int(x: Any, default: int) -> int:
    try:
        return int(x)
    except (TypeError, ValueError):
        return default


def _as_float(x: Any, default: float) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return default


def supabase_cfg() -> Dict[str, str]:
    return {
        "url": str(_lookup("supabase", "url", "SUPABASE_URL", "")).strip(),
        "anon_key": str(_lookup("supabase", "anon_key", "SUPABASE_ANON_KEY", "")).strip(),
        "table": str(_lookup("supabase", "table", "SUPABASE_TABLE", "user_data")).strip() or "user_data",
    }


def openai_cfg() -> Dict[str, Any]:
    d = OPENAI_DEFAULTS
    return {
        "api_key": str(_lookup("openai", "api_key", "OPENAI_API_KEY", d["api_key"])).strip(),
        "model": str(_lookup("openai", "model", "OPENAI_MODEL", d["model"])).strip() or d["model"],
        "max_tokens": _as_int(_lookup("openai", "max_tokens", "OPENAI_MAX_TOKENS", d["max_tokens"]), d["max_tokens"]),
        "temperature": _as_float(_lookup("openai", "temperature", "OPENAI_TEMPERATURE", d["temperature"]), d["temperature"]),
    }


def gmail_cfg() -> Dict[str, Any]:
    d = GMAIL_DEFAULTS
    return {
        "access_token": str(_lookup("gmail", "access_token", "GMAIL_ACCESS_TOKEN", d["access_token"])).strip(),
        "keywords": _as_list(_lookup("gmail", "keywords", "GMAIL_KEYWORDS", d["keywords"]), d["keywords"]),
        "max_results": _as_int(_lookup("gmail", "max_results", "GMAIL_MAX_RESULTS", d["max_results"]), d["max_results"]),
        "default_days": _as_int(_lookup("gmail", "default_days", "GMAIL_DEFAULT_DAYS", d["default_days"]), d["default_days"]),
        "max_workers": _as_int(_lookup("gmail", "max_workers", "GMAIL_MAX_WORKERS", d["max_workers"]), d["max_workers"]),
    }


def debug_enabled() -> bool:
    return str(_secret_flat("DEBUG_MODE") or "").strip().lower() in ("1", "true", "yes", "on")


def openai_configured() -> bool:
    return bool(openai_cfg()["api_key"])


def gmail_configured() -> bool:
    return bool(gmail_cfg()["access_token"])
