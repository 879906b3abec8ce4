"""Command-line entry point."""
import json
import sys
from types import SimpleNamespace

import pytest

import speakeval.__main__ as cli
from speakeval.evaluation.models import CRITERIA
from speakeval.evaluation.testing import create_mock_pipeline, make_speech_wav


@pytest.fixture
def cli_env(monkeypatch, tmp_path):
    config = SimpleNamespace(log_file=str(tmp_path / "speakeval.log"), log_level="INFO")
    pipeline = create_mock_pipeline()
    monkeypatch.setattr(cli, "get_config", lambda: config)
    monkeypatch.setattr(cli, "setup_logging", lambda path, level: path)
    monkeypatch.setattr(cli, "JobOrchestrator",
                        SimpleNamespace(from_config=lambda config, trim_trailing=False: pipeline))
    return pipeline


def run(monkeypatch, *args):
    monkeypatch.setattr(sys, "argv", ["speakeval", *args])
    cli.main()


def test_usage_without_segments(monkeypatch, cli_env, capsys):
    with pytest.raises(SystemExit) as excinfo:
        run(monkeypatch, "test-1")
    assert excinfo.value.code == 1
    assert "Usage" in capsys.readouterr().out


def test_missing_recording(monkeypatch, cli_env, tmp_path, capsys):
    with pytest.raises(SystemExit) as excinfo:
        run(monkeypatch, "test-1", f"part1-q1={tmp_path / 'nope.wav'}")
    assert excinfo.value.code == 1
    assert "Recording not found" in capsys.readouterr().out


def test_evaluates_local_recordings_as_json(monkeypatch, cli_env, tmp_path, capsys):
    wav = tmp_path / "answer.wav"
    wav.write_bytes(make_speech_wav(1.0))

    run(monkeypatch, "test-1", f"part1-q1={wav}", "--json", "--user=alice")

    out = capsys.readouterr().out
    payload = json.loads(out[out.index("{"):])
    assert payload["overall_band"] > 0
    assert set(payload["criteria"]) == set(CRITERIA)
    job = cli_env.job_store.list_jobs()[0]
    assert job.user_id == "alice"
    assert job.status.value == "completed"
