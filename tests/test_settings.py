from __future__ import annotations

from pathlib import Path

import pytest

from docchain.settings import RuntimeSettings


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("DOCCHAIN_MAX_ROLLBACK_DEPTH", "DOCCHAIN_LOCK_TTL_SECONDS", "DOCCHAIN_REVIEW_GATING"):
        monkeypatch.delenv(name, raising=False)
    settings = RuntimeSettings.from_env()
    assert settings.max_rollback_depth == 3
    assert settings.lock_ttl_seconds == 30
    assert settings.idempotency_ttl_seconds == 3_600
    assert settings.review_gating_enabled is False


def test_runtime_settings_from_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DOCCHAIN_MAX_ROLLBACK_DEPTH", "5")
    monkeypatch.setenv("DOCCHAIN_LOCK_TTL_SECONDS", "10")
    monkeypatch.setenv("DOCCHAIN_REVIEW_GATING", " ON ")
    monkeypatch.setenv("DOCCHAIN_GENERATOR_MODEL", "  gpt-4o  ")
    settings = RuntimeSettings.from_env()
    assert settings.max_rollback_depth == 5
    assert settings.lock_ttl_seconds == 10
    assert settings.review_gating_enabled is True
    assert settings.generator_model == "gpt-4o"


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("DOCCHAIN_LOCK_TTL_SECONDS", "abc"),
        ("DOCCHAIN_LOCK_TTL_SECONDS", "0"),
        ("DOCCHAIN_MAX_ROLLBACK_DEPTH", "7"),
        ("DOCCHAIN_REVIEW_GATING", "sometimes"),
        ("DOCCHAIN_GENERATOR_MODEL", "   "),
    ],
)
def test_runtime_settings_invalid_env_raises(monkeypatch: pytest.MonkeyPatch, name: str, value: str) -> None:
    monkeypatch.setenv(name, value)
    with pytest.raises(ValueError):
        RuntimeSettings.from_env()


def test_sweep_interval_cannot_exceed_ttl() -> None:
    with pytest.raises(ValueError, match="SWEEP"):
        RuntimeSettings(idempotency_ttl_seconds=60, idempotency_sweep_seconds=120).normalized()


def test_state_store_path_resolves_relative_roots(tmp_path: Path) -> None:
    assert RuntimeSettings().state_store_path(tmp_path) == tmp_path / "state_store"
    absolute = tmp_path / "elsewhere"
    assert RuntimeSettings(state_store_root=str(absolute)).state_store_path(Path("/ignored")) == absolute
