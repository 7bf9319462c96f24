import logging

import pytest
from pydantic import ValidationError

from kidpoints.schemas import IdentityHints, MalformedQRPayload, SecretSubmission
from kidpoints.settings import Settings, is_enabled
from kidpoints.utils.logger import log_call, mask_params


def test_qr_payload_becomes_hints():
    hints = IdentityHints.from_qr("https://kids.example.com/child/login?fid=FAM123&nick=Sam")

    assert (hints.family, hints.child, hints.nick) == ("FAM123", None, "Sam")


@pytest.mark.parametrize("payload", ["", "FAM123", "kids.example.com/child/login?fid=FAM123"])
def test_qr_payload_must_be_absolute_url(payload):
    with pytest.raises(MalformedQRPayload):
        IdentityHints.from_qr(payload)


def test_direct_fields_win_over_qr():
    hints = IdentityHints(nick="Alex", qr_payload="https://x.example/login?fid=FAM123&nick=Sam").expanded()

    assert (hints.family, hints.nick) == ("FAM123", "Alex")


def test_blank_hints_are_none():
    hints = IdentityHints.from_query({"fid": "  ", "child": "", "nick": " Sam "})

    assert (hints.family, hints.child, hints.nick) == (None, None, "Sam")


def test_secret_submission_rules():
    assert SecretSubmission(secret="0042").pin_mode is True
    assert SecretSubmission(secret="hunter2!", mode="password").pin_mode is False

    with pytest.raises(ValidationError, match="PIN must be 4-12 digits"):
        SecretSubmission(secret="12a4")
    with pytest.raises(ValidationError, match="Enter your password"):
        SecretSubmission(secret="  ", mode="password")


def test_secret_is_hidden_in_repr():
    sub = SecretSubmission(secret="1234")

    assert "1234" not in repr(sub)
    assert sub.secret.get_secret_value() == "1234"


def test_mask_params_hides_secret_keys(caplog):
    assert mask_params({"clear": "1234", "child_id": "c1", "PIN": "9"}) == {
        "clear": "***masked***",
        "child_id": "c1",
        "PIN": "***masked***",
    }

    caplog.set_level(logging.DEBUG, logger="kidpoints.store")
    log_call("rpc", "api_child_auth_check", {"clear": "1234"})
    assert "1234" not in caplog.text


def test_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SUPABASE_URL", "https://abc.supabase.co/")
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)
    monkeypatch.setenv("SUPABASE_SERVICE_ROLE_KEY", "service-key")
    monkeypatch.setenv("KIDPOINTS_STATE_PATH", str(tmp_path / "s.json"))
    monkeypatch.setenv("KIDPOINTS_VERIFY_TIMEOUT", "not-a-number")
    monkeypatch.setenv("KIDPOINTS_REALTIME_ENABLED", "false")

    cfg = Settings.from_env()

    assert cfg.supabase_url == "https://abc.supabase.co"
    assert cfg.supabase_key == "service-key"
    assert cfg.state_path == tmp_path / "s.json"
    assert cfg.verify_timeout == 15.0
    assert cfg.realtime_enabled is False
    assert cfg.configured is True


def test_is_enabled(monkeypatch):
    monkeypatch.setenv("SOME_FLAG", "TRUE")
    assert is_enabled("SOME_FLAG") is True
    monkeypatch.delenv("SOME_FLAG")
    assert is_enabled("SOME_FLAG", default=True) is True
