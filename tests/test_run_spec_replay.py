from __future__ import annotations

import json

import pytest

import run_spec_replay
from replay_errors import SpecValidationError


def test_no_spec_prints_usage_and_exits_zero(monkeypatch: pytest.MonkeyPatch, capsys) -> None:
    monkeypatch.delenv("REPLAY_SPEC", raising=False)
    assert run_spec_replay.main([]) == 0
    assert "usage: spec-replay" in capsys.readouterr().out


def test_help_exits_zero() -> None:
    with pytest.raises(SystemExit) as exc:
        run_spec_replay.main(["--help"])
    assert exc.value.code == 0


def test_success_prints_json_report(monkeypatch: pytest.MonkeyPatch, capsys, tmp_path) -> None:
    seen = {}

    async def fake_run(config):
        seen["config"] = config
        return {"ok": True, "anchors": {"a": "1"}}

    monkeypatch.setattr(run_spec_replay, "run_replay", fake_run)
    monkeypatch.setenv("REPLAY_SPEC", str(tmp_path / "s.json"))
    assert run_spec_replay.main(["--headful", "--allow-eval"]) == 0
    assert json.loads(capsys.readouterr().out) == {"ok": True, "anchors": {"a": "1"}}
    assert seen["config"].headless is False
    assert seen["config"].allow_eval is True


def test_failure_goes_to_stderr_with_nonzero_exit(monkeypatch: pytest.MonkeyPatch, capsys, tmp_path) -> None:
    async def fake_run(config):
        raise SpecValidationError("Unknown op: ui.nope. step=x")

    monkeypatch.setattr(run_spec_replay, "run_replay", fake_run)
    assert run_spec_replay.main([str(tmp_path / "s.json")]) == 1
    out = capsys.readouterr()
    assert out.out == ""
    assert "✖ Replay failed: Unknown op: ui.nope. step=x" in out.err
