import json

import pytest

import manage
from sign_config import AppSettings
from translation_service import TranslationDispatcher


def _write_events(path, events):
    path.write_text("\n".join(json.dumps(e) for e in events) + "\n", encoding="utf-8")
    return str(path)


def test_load_events_sorts_and_skips_comments(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text(
        '# recorded session\n'
        '{"label": "TWO", "confidence": 0.9, "timestamp_ms": 600}\n'
        '\n'
        '{"label": "ONE", "confidence": 0.95, "timestamp_ms": 0}\n',
        encoding="utf-8",
    )
    assert manage.load_events(str(path)) == [("ONE", 0.95, 0.0), ("TWO", 0.9, 600.0)]


def test_load_events_reports_bad_line(tmp_path):
    path = tmp_path / "events.jsonl"
    path.write_text('{"label": "ONE", "confidence": 0.9, "timestamp_ms": 0}\n{"label": "TWO"}\n', encoding="utf-8")
    with pytest.raises(ValueError, match=":2:"):
        manage.load_events(str(path))


def test_replay_matches_live_behaviour():
    events = [
        ("ONE", 0.95, 0.0),
        ("ONE", 0.95, 500.0),
        ("TWO", 0.95, 600.0),
        ("HELLO", 0.95, 10000.0),
    ]
    results = manage.replay(events, AppSettings(), dispatcher=TranslationDispatcher())
    assert [(r.generation, r.original_signs) for r in results] == [(1, ("ONE", "TWO")), (2, ("HELLO",))]


def test_replay_command_prints_results(tmp_path, capsys, monkeypatch):
    monkeypatch.delenv("SIGN_LLM_API_KEY", raising=False)
    path = _write_events(
        tmp_path / "events.jsonl",
        [
            {"label": "STOP", "confidence": 0.9, "timestamp_ms": 0},
            {"label": "NO", "confidence": 0.9, "timestamp_ms": 1000},
        ],
    )
    assert manage.main(["replay", "--events", path]) == 0

    lines = [json.loads(line) for line in capsys.readouterr().out.splitlines()]
    assert lines == [
        {
            "success": True,
            "translation": "STOP NO",
            "original_signs": ["STOP", "NO"],
            "method": "direct",
            "generation": 1,
            "error": None,
        }
    ]


def test_missing_events_file_exits_with_error(tmp_path):
    assert manage.main(["replay", "--events", str(tmp_path / "missing.jsonl")]) == 2
