import json
from unittest.mock import patch

import pytest

from autolead.cli import main
from autolead.model import CompletionRound
from autolead.session import Artifacts, Status
from autolead.store import JsonSessionStore


def _round(text="", calls=()):
    blocks = [{"type": "text", "text": text}] if text else []
    blocks += [{"type": "tool_use", "id": c["id"], "name": c["name"], "input": c["input"]} for c in calls]
    return CompletionRound(content=text, tool_calls=list(calls), _provider="anthropic", _raw={"content_blocks": blocks})


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("EVENT_TYPE", raising=False)
    monkeypatch.delenv("EVENT_PAYLOAD", raising=False)
    with patch("sys.argv", ["autolead", "init"]):
        main()
    return tmp_path


def _store(project):
    return JsonSessionStore(project / ".autolead" / "sessions")


# --- init ---

def test_init_writes_config(project):
    assert (project / ".autolead" / "config.json").exists()


def test_init_twice_fails(project):
    with patch("sys.argv", ["autolead", "init"]):
        with pytest.raises(SystemExit):
            main()


def test_commands_need_config(tmp_path, monkeypatch, capsys):
    monkeypatch.chdir(tmp_path)
    with patch("sys.argv", ["autolead", "sessions"]):
        with pytest.raises(SystemExit):
            main()
    assert "autolead init" in capsys.readouterr().err


# --- event ---

@patch("autolead.cli.make_completer")
def test_event_dry_run(mock_make, project, capsys):
    mock_make.return_value = lambda messages, tools=None, max_tokens=4096: _round(
        calls=[{"id": "c1", "name": "mark_complete", "input": {"summary": "Nothing to change"}}],
    )
    payload = json.dumps({"source_repo": "acme/web", "issue_number": 2, "issue_title": "Typo"})
    with patch("sys.argv", ["autolead", "event", "agent_start", "--dry-run", "--payload", payload]):
        main()
    assert "agent_start:" in capsys.readouterr().out
    session = _store(project).get("acme/web", 2)
    assert session.status == Status.COMPLETED
    assert session.artifacts.mode == "lead"


@patch("autolead.cli.make_completer")
def test_event_type_and_payload_from_environment(mock_make, project, monkeypatch):
    _store(project).create("acme/web", 2, Artifacts(mode="lead"))
    monkeypatch.setenv("EVENT_TYPE", "agent_stop")
    monkeypatch.setenv("EVENT_PAYLOAD", json.dumps({"source_repo": "acme/web", "issue_number": 2, "sender": "bob"}))
    with patch("sys.argv", ["autolead", "event", "--dry-run"]):
        main()
    assert _store(project).get("acme/web", 2).status == Status.CANCELLED


@patch("autolead.cli.make_completer")
def test_event_payload_file(mock_make, project):
    _store(project).create("acme/web", 2)
    payload_file = project / "payload.json"
    payload_file.write_text(json.dumps({"source_repo": "acme/web", "issue_number": 2}))
    with patch("sys.argv", ["autolead", "event", "agent_stop", "--dry-run", "--payload-file", str(payload_file)]):
        main()
    assert _store(project).get("acme/web", 2).status == Status.CANCELLED


@patch("autolead.cli.make_completer")
def test_unknown_event_exits(mock_make, project, capsys):
    with patch("sys.argv", ["autolead", "event", "deploy", "--dry-run"]):
        with pytest.raises(SystemExit) as exc:
            main()
    assert exc.value.code == 1
    assert "Unknown event type: deploy" in capsys.readouterr().err


def test_invalid_payload_exits(project, capsys):
    with patch("sys.argv", ["autolead", "event", "agent_start", "--payload", "{nope"]):
        with pytest.raises(SystemExit):
            main()
    assert "invalid payload JSON" in capsys.readouterr().err


@patch("autolead.cli.make_completer")
def test_missing_token_without_dry_run(mock_make, project, monkeypatch, capsys):
    monkeypatch.delenv("GITHUB_TOKEN", raising=False)
    payload = json.dumps({"source_repo": "acme/web", "issue_number": 2})
    with patch("sys.argv", ["autolead", "event", "agent_stop", "--payload", payload]):
        with pytest.raises(SystemExit):
            main()
    assert "no GitHub token" in capsys.readouterr().err


# --- show / sessions ---

def test_sessions_lists(project, capsys):
    store = _store(project)
    store.create("acme/web", 1, Artifacts(mode="pipeline"))
    store.create("acme/web", 2, Artifacts(mode="lead"))
    with patch("sys.argv", ["autolead", "sessions"]):
        main()
    out = capsys.readouterr().out
    assert "acme/web#1  pipeline" in out
    assert "acme/web#2  lead" in out


def test_sessions_empty(project, capsys):
    with patch("sys.argv", ["autolead", "sessions"]):
        main()
    assert "No sessions." in capsys.readouterr().out


def test_show(project, capsys):
    store = _store(project)
    store.create("acme/web", 1)
    store.merge_artifacts("acme/web", 1, {"scope": "Only the header"}, "scope")
    with patch("sys.argv", ["autolead", "show", "acme/web", "1"]):
        main()
    out = capsys.readouterr().out
    assert "acme/web#1  phase=clarifying  status=active" in out
    assert "## scope\nOnly the header" in out


def test_show_missing(project, capsys):
    with patch("sys.argv", ["autolead", "show", "acme/web", "99"]):
        main()
    assert "No session for acme/web#99." in capsys.readouterr().out
