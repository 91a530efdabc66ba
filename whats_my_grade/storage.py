import datetime
import json
import logging
import os
from typing import Any, Dict, Optional

import streamlit as st

from whats_my_grade.config import supabase_cfg
from whats_my_grade.records import ensure_user_schema

logger = logging.getLogger(__name__)

# -------------------------------
# Optional Supabase support
# -------------------------------

SUPABASE_AVAILABLE = False
try:
    from supabase import create_client
    SUPABASE_AVAILABLE = True
except ImportError:
    SUPABASE_AVAILABLE = False


DATA_FILE = os.environ.get("WHATS_MY_GRADE_DATA_FILE", "whats_my_grade_data.json")  # local fallback mode


def supabase_enabled() -> bool:
    cfg = supabase_cfg()
    return SUPABASE_AVAILABLE and bool(cfg["url"]) and bool(cfg["anon_key"])


def _sb():
    """
    Supabase client stored per Streamlit session (important: don't global-cache it).
    """
    cfg = supabase_cfg()
    if not cfg["url"] or not cfg["anon_key"]:
        return None

    prev = st.session_state.get("_sb_client_meta")
    if not prev or prev.get("url") != cfg["url"] or prev.get("anon_key") != cfg["anon_key"]:
        st.session_state["_sb_client"] = create_client(cfg["url"], cfg["anon_key"])
        st.session_state["_sb_client_meta"] = {"url": cfg["url"], "anon_key": cfg["anon_key"]}

    return st.session_state.get("_sb_client")


def sb_authed():
    sb = _sb()
    if sb is None:
        return None

    sess = st.session_state.get("sb_session") or {}
    at = sess.get("access_token")
    rt = sess.get("refresh_token")
    if at and rt:
        try:
            sb.auth.set_session(at, rt)
        except Exception as e:
            # Some versions may not support set_session; still ok
            logger.debug("Supabase set_session failed: %s", e)

    return sb


# -------------------------------
# Supabase auth
# -------------------------------

class AuthError(Exception):
    pass


SESSION_AUTH_KEYS = ["current_user", "current_username", "sb_session", "_sb_client", "_sb_client_meta"]


def sign_in(email: str, password: str) -> None:
    sb = _sb()
    if sb is None:
        raise AuthError("Supabase client not available. Check secrets.")
    try:
        res = sb.auth.sign_in_with_password({"email": email, "password": password})
    except Exception as e:
        logger.warning("Supabase login failed: %s", e)
        raise AuthError(f"Login failed: {e}") from e

    sess = getattr(res, "session", None)
    user = getattr(res, "user", None) or getattr(sess, "user", None)
    if not (sess and user and sess.access_token and sess.refresh_token):
        raise AuthError("Login failed. Double-check email/password.")

    st.session_state.sb_session = {"access_token": sess.access_token, "refresh_token": sess.refresh_token}
    st.session_state.current_user = str(user.id)
    st.session_state.current_username = str(user.email)
    logger.info("Signed in %s", user.email)


def sign_up(email: str, password: str) -> None:
    sb = _sb()
    if sb is None:
        raise AuthError("Supabase client not available. Check secrets.")
    try:
        sb.auth.sign_up({"email": email, "password": password})
    except Exception as e:
        logger.warning("Supabase sign up failed: %s", e)
        raise AuthError(f"Sign up failed: {e}") from e


def sign_out() -> None:
    sb = sb_authed()
    if sb is not None:
        try:
            sb.auth.sign_out()
        except Exception as e:
            logger.warning("Supabase sign out failed: %s", e)
    for k in SESSION_AUTH_KEYS:
        st.session_state.pop(k, None)


def _jsonable(x: Any) -> Any:
    if isinstance(x, (datetime.datetime, datetime.date)):
        return x.isoformat()
    if isinstance(x, dict):
        return {str(k): _jsonable(v) for k, v in x.items()}
    if isinstance(x, list):
        return [_jsonable(v) for v in x]
    return x


# -------------------------------
# Data persistence (LOCAL JSON fallback)
# -------------------------------

def load_data(path: Optional[str] = None) -> Dict[str, Any]:
    path = path or DATA_FILE
    if not os.path.exists(path):
        return {"users": {}}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Could not read %s, starting empty: %s", path, e)
        return {"users": {}}
    if not isinstance(data, dict):
        return {"users": {}}
    data.setdefault("users", {})
    return data


def save_data(data: Dict[str, Any], path: Optional[str] = None) -> None:
    path = path or DATA_FILE
    try:
        with open(path, "w", encoding="utf-8") as f:
            json.dump(_jsonable(data), f, indent=2, ensure_ascii=False, default=str)
    except OSError as e:
        logger.error("Error saving data to %s: %s", path, e)
        st.error(f"Error saving data: {e}")


# -------------------------------
# User data helpers
# -------------------------------

def init_app_state():
    desired = "supabase" if supabase_enabled() else "local"
    if st.session_state.get("storage_mode") != desired:
        st.session_state.storage_mode = desired
        logger.info("Storage mode: %s", desired)

    if st.session_state.storage_mode == "local":
        st.session_state.setdefault("app_data", load_data())

    st.session_state.setdefault("current_user", None)        # uuid in supabase mode; name in local
    st.session_state.setdefault("current_username", None)    # email in supabase mode; name in local
    st.session_state.setdefault("sb_session", None)          # {"access_token":..., "refresh_token":...}


def get_user_data(username: str) -> Dict[str, Any]:
    # Supabase mode (real multi-user)
    if st.session_state.get("storage_mode") == "supabase" and supabase_enabled():
        sb = sb_authed()
        user_id = st.session_state.get("current_user")
        if sb is None or not user_id:
            return ensure_user_schema({}, username)

        table = supabase_cfg()["table"]
        try:
            resp = sb.table(table).select("data").eq("user_id", user_id).execute()
            rows = getattr(resp, "data", None)
            if isinstance(rows, list) and rows and isinstance(rows[0], dict):
                data = rows[0].get("data") or {}
            else:
                data = {}
            return ensure_user_schema(data, username)
        except Exception as e:
            logger.exception("Supabase load failed for %s", user_id)
            st.error(f"Supabase load failed: {e}")
            return ensure_user_schema({}, username)

    # Local JSON mode
    users = st.session_state.app_data.setdefault("users", {})
    user_data = ensure_user_schema(users.get(username) or {}, username)
    users[username] = user_data
    return user_data


def save_user_data(username: str, user_data: Dict[str, Any]) -> None:
    # Supabase mode (real multi-user)
    if st.session_state.get("storage_mode") == "supabase" and supabase_enabled():
        sb = sb_authed()
        user_id = st.session_state.get("current_user")
        if sb is None or not user_id:
            return

        payload = {
            "user_id": user_id,
            "data": _jsonable(user_data),
            "updated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }

        try:
            sb.table(supabase_cfg()["table"]).upsert(payload, on_conflict="user_id").execute()
        except Exception as e:
            logger.exception("Supabase save failed for %s", user_id)
            st.error(f"Supabase save failed: {e}")
        return

    # Local JSON mode
    st.session_state.app_data.setdefault("users", {})
    st.session_state.app_data["users"][username] = user_data
    save_data(st.session_state.app_data)
