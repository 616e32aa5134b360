import pytest

from paywall.config import Settings
from paywall.errors import ContentLocked
from paywall.unlock import ResultUnlockState


def test_defaults(monkeypatch):
    for name in ("PAYWALL_POLL_INTERVAL", "PAYWALL_MAX_POLL_DURATION", "MIDTRANS_ENVIRONMENT",
                 "MIDTRANS_CLIENT_KEY", "PAYWALL_SUCCESS_CHECK_DELAY"):
        monkeypatch.delenv(name, raising=False)

    settings = Settings.from_env()

    assert settings.poll_interval == 10
    assert settings.max_poll_duration == 600
    assert settings.success_check_delay == 3
    assert settings.pending_check_delay == 5
    assert settings.close_check_delay == 2
    assert settings.snap_script_url == "https://app.sandbox.midtrans.com/snap/snap.js"
    assert not settings.is_production


def test_production_environment(monkeypatch):
    monkeypatch.setenv("MIDTRANS_ENVIRONMENT", "production")
    monkeypatch.delenv("MIDTRANS_CLIENT_KEY", raising=False)

    settings = Settings.from_env()

    assert settings.is_production
    assert settings.snap_script_url == "https://app.midtrans.com/snap/snap.js"
    assert settings.midtrans_client_key.startswith("Mid-client-")


def test_zero_disables_poll_cap(monkeypatch):
    monkeypatch.setenv("PAYWALL_MAX_POLL_DURATION", "0")
    assert Settings.from_env().max_poll_duration is None


def test_bad_values_fail_loudly(monkeypatch):
    monkeypatch.setenv("PAYWALL_POLL_INTERVAL", "often")
    with pytest.raises(RuntimeError):
        Settings.from_env()

    monkeypatch.setenv("PAYWALL_POLL_INTERVAL", "10")
    monkeypatch.setenv("MIDTRANS_ENVIRONMENT", "staging")
    with pytest.raises(RuntimeError):
        Settings.from_env()


def test_unlock_state_latches_once():
    state = ResultUnlockState()
    seen = []
    state.subscribe(seen.append)

    with pytest.raises(ContentLocked):
        state.require_unlocked()

    assert state._latch("order-1")
    assert not state._latch("order-2")
    assert state.order_id == "order-1"
    assert seen == [state]
    state.require_unlocked()

    late = []
    state.subscribe(late.append)
    assert late == [state]
