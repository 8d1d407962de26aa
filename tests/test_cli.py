from __future__ import annotations

import json
from pathlib import Path

import pytest

from docchain.__main__ import main, parse_args


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "DOCCHAIN_STATE_STORE_ROOT",
        "DOCCHAIN_MAX_ROLLBACK_DEPTH",
        "DOCCHAIN_LOCK_TTL_SECONDS",
        "DOCCHAIN_IDEMPOTENCY_TTL_SECONDS",
        "DOCCHAIN_REVIEW_GATING",
    ):
        monkeypatch.delenv(name, raising=False)


def _run(tmp_path: Path, capsys: pytest.CaptureFixture[str], *argv: str) -> tuple[int, dict]:
    code = main(["--repo-root", str(tmp_path), *argv])
    output = capsys.readouterr().out
    return code, json.loads(output) if output.strip() else {}


def test_init_and_status(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, created = _run(tmp_path, capsys, "init", "Demo App", "--description", "A demo")
    assert code == 0
    assert created["project"]["slug"] == "demo-app"
    assert (tmp_path / "state_store" / "projects" / "demo-app" / "metadata.json").is_file()

    code, status = _run(tmp_path, capsys, "status", "demo-app")
    assert code == 0
    assert status["project"]["current_phase"] == "ANALYSIS"


def test_put_from_file_and_advance(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(tmp_path, capsys, "init", "Demo App")
    brief = tmp_path / "brief.md"
    brief.write_text("# Brief\n", encoding="utf-8")

    code, stored = _run(tmp_path, capsys, "put", "demo-app", "ANALYSIS", "project-brief.md", "--file", str(brief))
    assert code == 0 and stored["version"] == 1

    code, advanced = _run(tmp_path, capsys, "advance", "demo-app")
    assert code == 1
    assert advanced["reason"] == "MISSING_ARTIFACTS"
    assert "project-brief.md" not in advanced["missing_artifacts"]


def test_rollback_requires_confirm_flag(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    _run(tmp_path, capsys, "init", "Demo App")
    code, result = _run(tmp_path, capsys, "rollback", "demo-app", "ANALYSIS")
    assert code == 1
    assert result["reason"] == "CONFIRMATION_REQUIRED"


def test_unknown_project_exits_nonzero(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code, result = _run(tmp_path, capsys, "status", "ghost")
    assert code == 1
    assert result["reason"] == "NOT_FOUND"


def test_invalid_configuration_exits_nonzero(
    tmp_path: Path, capsys: pytest.CaptureFixture[str], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("DOCCHAIN_REVIEW_GATING", "sometimes")
    assert main(["--repo-root", str(tmp_path), "status", "demo-app"]) == 1
    assert capsys.readouterr().out == ""


def test_put_requires_a_single_source() -> None:
    with pytest.raises(SystemExit):
        parse_args(["put", "demo-app", "SPEC", "PRD.md"])
    with pytest.raises(SystemExit):
        parse_args(["put", "demo-app", "SPEC", "PRD.md", "--text", "x", "--file", "PRD.md"])
