import datetime
import json
from types import SimpleNamespace

import pytest

from whats_my_grade import config, storage


# -------------------------------
# Local JSON persistence
# -------------------------------

def test_load_data_missing_file(tmp_path):
    assert storage.load_data(str(tmp_path / "nope.json")) == {"users": {}}


def test_load_data_corrupt_file(tmp_path):
    path = tmp_path / "data.json"
    path.write_text("{not json", encoding="utf-8")
    assert storage.load_data(str(path)) == {"users": {}}


def test_load_data_non_dict(tmp_path):
    path = tmp_path / "data.json"
    path.write_text("[1, 2]", encoding="utf-8")
    assert storage.load_data(str(path)) == {"users": {}}


def test_save_then_load(tmp_path):
    path = str(tmp_path / "data.json")
    data = {
        "users": {
            "alice": {
                "assignments": [{"id": "a1", "due_date": datetime.date(2026, 10, 12), "points_earned": None}],
            }
        }
    }
    storage.save_data(data, path)

    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    assert raw["users"]["alice"]["assignments"][0]["due_date"] == "2026-10-12"

    loaded = storage.load_data(path)
    assert loaded["users"]["alice"]["assignments"][0]["points_earned"] is None


# -------------------------------
# Config lookup order
# -------------------------------

def test_config_defaults(monkeypatch):
    monkeypatch.setattr(config, "_secret_section", lambda name: {})
    monkeypatch.setattr(config, "_session_overrides", lambda: {})
    for key in ("OPENAI_API_KEY", "OPENAI_MODEL", "GMAIL_ACCESS_TOKEN", "GMAIL_KEYWORDS", "GMAIL_MAX_RESULTS"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setattr(config.st, "secrets", {})

    ocfg = config.openai_cfg()
    assert ocfg["model"] == "gpt-4o-mini"
    assert ocfg["max_tokens"] == 1000
    assert config.openai_configured() is False

    gcfg = config.gmail_cfg()
    assert gcfg["keywords"] == config.GMAIL_DEFAULTS["keywords"]
    assert gcfg["max_results"] == 50
    assert config.gmail_configured() is False


def test_config_env_then_secrets_then_session(monkeypatch):
    monkeypatch.setattr(config.st, "secrets", {})
    monkeypatch.setattr(config, "_session_overrides", lambda: {})
    monkeypatch.setenv("GMAIL_KEYWORDS", "exam, quiz ,")
    monkeypatch.setenv("GMAIL_MAX_RESULTS", "oops")
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")

    monkeypatch.setattr(config, "_secret_section", lambda name: {})
    assert config.gmail_cfg()["keywords"] == ["exam", "quiz"]
    assert config.gmail_cfg()["max_results"] == 50
    assert config.openai_cfg()["api_key"] == "env-key"

    monkeypatch.setattr(config, "_secret_section", lambda name: {"api_key": "secret-key"} if name == "openai" else {})
    assert config.openai_cfg()["api_key"] == "secret-key"

    monkeypatch.setattr(config, "_session_overrides", lambda: {"openai": {"api_key": "session-key"}})
    assert config.openai_cfg()["api_key"] == "session-key"
    assert config.openai_configured() is True


def test_debug_enabled(monkeypatch):
    monkeypatch.setattr(config.st, "secrets", {})
    monkeypatch.setenv("DEBUG_MODE", "true")
    assert config.debug_enabled() is True
    monkeypatch.setenv("DEBUG_MODE", "0")
    assert config.debug_enabled() is False


# -------------------------------
# Supabase auth
# -------------------------------

class _State(dict):
    __getattr__ = dict.__getitem__
    __setattr__ = dict.__setitem__


def _fake_auth(**methods):
    return SimpleNamespace(auth=SimpleNamespace(**methods))


@pytest.fixture
def session(monkeypatch):
    state = _State()
    monkeypatch.setattr(storage.st, "session_state", state)
    return state


def test_sign_in_stores_session(monkeypatch, session):
    res = SimpleNamespace(
        session=SimpleNamespace(access_token="at", refresh_token="rt"),
        user=SimpleNamespace(id="uuid-1", email="a@b.edu"),
    )
    monkeypatch.setattr(storage, "_sb", lambda: _fake_auth(sign_in_with_password=lambda creds: res))

    storage.sign_in("a@b.edu", "pw")

    assert session["sb_session"] == {"access_token": "at", "refresh_token": "rt"}
    assert session["current_user"] == "uuid-1"
    assert session["current_username"] == "a@b.edu"


def test_sign_in_without_session_fails(monkeypatch, session):
    res = SimpleNamespace(session=None, user=None)
    monkeypatch.setattr(storage, "_sb", lambda: _fake_auth(sign_in_with_password=lambda creds: res))

    with pytest.raises(storage.AuthError, match="Double-check"):
        storage.sign_in("a@b.edu", "pw")
    assert "current_user" not in session


def test_sign_in_client_error_becomes_auth_error(monkeypatch, session):
    def boom(creds):
        raise RuntimeError("invalid credentials")

    monkeypatch.setattr(storage, "_sb", lambda: _fake_auth(sign_in_with_password=boom))
    with pytest.raises(storage.AuthError, match="invalid credentials"):
        storage.sign_in("a@b.edu", "pw")


def test_sign_in_without_client(monkeypatch, session):
    monkeypatch.setattr(storage, "_sb", lambda: None)
    with pytest.raises(storage.AuthError):
        storage.sign_in("a@b.edu", "pw")


def test_sign_out_clears_session(monkeypatch, session):
    calls = []
    monkeypatch.setattr(storage, "sb_authed", lambda: _fake_auth(sign_out=lambda: calls.append("out")))
    session.update({"current_user": "uuid-1", "current_username": "a@b.edu", "sb_session": {}, "other": 1})

    storage.sign_out()

    assert calls == ["out"]
    assert dict(session) == {"other": 1}
