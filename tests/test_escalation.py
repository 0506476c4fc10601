import subprocess
from unittest.mock import patch

import pytest

from autolead.escalation import (
    MAX_SCORE,
    REPLY_APPROVE,
    REPLY_BASIC,
    REPLY_MODIFY,
    REPLY_OTHER,
    EscalationMode,
    ExternalCodeTool,
    PlanReply,
    analyze_complexity,
    parse_plan_files,
    parse_plan_reply,
    plan_reply_updates,
    summarize_plan,
)
from autolead.fileguard import ErrorKind


PLAN_TEXT = """## Files to Modify
- src/app.ts: wire the new button
- `src/styles.css`: add styles

## New Files to Create
- src/components/Button.tsx: the component

## Estimated Complexity
Medium
"""


# --- analyze_complexity ---

def test_four_extensions_plus_migrate_escalates():
    plan = "Update a.ts, b.tsx, c.css and d.json, then migrate the state store."
    analysis = analyze_complexity(plan, "", {"score_threshold": 25})
    assert analysis.score >= 45
    assert analysis.escalate is True


def test_simple_plan_does_not_escalate():
    analysis = analyze_complexity("Fix the typo in src/app.ts", "")
    assert analysis.score == 0
    assert analysis.escalate is False
    assert analysis.reasons == []


def test_file_threshold_is_strict():
    at_threshold = analyze_complexity("a.ts b.ts c.ts", "", {"file_count_threshold": 3})
    above = analyze_complexity("a.ts b.ts c.ts d.ts", "", {"file_count_threshold": 3})
    assert at_threshold.score == 0
    assert above.score == 30


def test_design_text_counts():
    analysis = analyze_complexity("", "This is an architectural change across the codebase")
    assert analysis.score == 45


def test_migration_pattern():
    analysis = analyze_complexity("Convert the forms from Formik to react-hook-form", "")
    assert "Migration pattern detected" in analysis.reasons
    assert analysis.score == 20


def test_score_is_capped():
    text = ("refactor migrate migration restructure rewrite overhaul cross-cutting across all "
            "codebase redesign a.ts b.ts c.ts d.ts e.ts")
    assert analyze_complexity(text, "").score == MAX_SCORE


def test_custom_keywords():
    analysis = analyze_complexity("Swap the ORM", "", {"keywords": ["orm"], "score_threshold": 10})
    assert analysis.score == 15
    assert analysis.escalate is True


# --- plan parsing ---

def test_parse_plan_files():
    assert parse_plan_files(PLAN_TEXT) == ["src/app.ts", "src/styles.css", "src/components/Button.tsx"]


def test_summarize_plan():
    summary = summarize_plan(PLAN_TEXT)
    assert "- Files to modify: 3" in summary
    assert "- Will create new files" in summary
    assert "- Complexity: Medium" in summary


# --- plan replies ---

@pytest.mark.parametrize("text,kind", [
    ("approve", REPLY_APPROVE),
    ("Approved!", REPLY_APPROVE),
    ("basic", REPLY_BASIC),
    ("modify: keep the old API", REPLY_MODIFY),
    ("what does step 2 mean?", REPLY_OTHER),
    ("", REPLY_OTHER),
])
def test_parse_plan_reply(text, kind):
    assert parse_plan_reply(text).kind == kind


def test_modify_feedback_extracted():
    assert parse_plan_reply("Modify: use hooks instead").feedback == "use hooks instead"


def test_reply_updates():
    assert plan_reply_updates("P", PlanReply(REPLY_APPROVE)) == {
        "approved_plan": "P", "pending_plan": None, "plan_feedback": None,
    }
    assert plan_reply_updates("P", PlanReply(REPLY_BASIC)) == {
        "pending_plan": None, "plan_summary": None, "escalation_declined": True,
    }
    assert plan_reply_updates("P", PlanReply(REPLY_MODIFY, "smaller")) == {
        "pending_plan": None, "plan_summary": None, "plan_feedback": "smaller",
    }
    assert plan_reply_updates("P", PlanReply(REPLY_OTHER, "huh")) == {}


# --- ExternalCodeTool ---

def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@patch("autolead.escalation.shutil.which", return_value=None)
def test_missing_tool_is_unavailable(mock_which, tmp_path):
    tool = ExternalCodeTool(tmp_path)
    result = tool.plan("task")
    assert result.success is False
    assert result.kind == ErrorKind.TOOL_UNAVAILABLE
    assert result.mode == EscalationMode.PLAN


@patch("autolead.escalation.changed_files", return_value=[])
@patch("autolead.escalation.subprocess.run")
@patch("autolead.escalation.shutil.which", return_value="/usr/bin/claude")
def test_plan_success(mock_which, mock_run, mock_changed, tmp_path):
    mock_run.return_value = _completed(stdout=PLAN_TEXT)
    tool = ExternalCodeTool(tmp_path, {"command": ["claude", "--print"], "plan_timeout_seconds": 5})
    result = tool.plan("Add a button", feedback="fewer files")
    argv = mock_run.call_args[0][0]
    assert argv[:2] == ["claude", "--print"]
    assert "--dangerously-skip-permissions" not in argv
    assert "fewer files" in argv[-1]
    assert mock_run.call_args[1]["timeout"] == 5
    assert result.success is True
    assert result.plan == PLAN_TEXT
    assert result.files_changed == ["src/app.ts", "src/styles.css", "src/components/Button.tsx"]


@patch("autolead.escalation.changed_files", side_effect=[[], ["src/app.ts"]])
@patch("autolead.escalation.subprocess.run")
@patch("autolead.escalation.shutil.which", return_value="/usr/bin/claude")
def test_plan_that_mutates_fails(mock_which, mock_run, mock_changed, tmp_path):
    mock_run.return_value = _completed(stdout=PLAN_TEXT)
    result = ExternalCodeTool(tmp_path).plan("task")
    assert result.success is False
    assert "modified the working tree: src/app.ts" in result.error


@patch("autolead.escalation.changed_files", return_value=["src/app.ts", "src/new.ts"])
@patch("autolead.escalation.subprocess.run")
@patch("autolead.escalation.shutil.which", return_value="/usr/bin/claude")
def test_execute_reports_changed_files(mock_which, mock_run, mock_changed, tmp_path):
    mock_run.return_value = _completed(stdout="done")
    result = ExternalCodeTool(tmp_path).execute("task", "the plan")
    argv = mock_run.call_args[0][0]
    assert "--dangerously-skip-permissions" in argv
    assert "the plan" in argv[-1]
    assert result.success is True
    assert result.files_changed == ["src/app.ts", "src/new.ts"]
    assert result.summary.startswith("External tool modified 2 file(s)")


@patch("autolead.escalation.subprocess.run")
@patch("autolead.escalation.shutil.which", return_value="/usr/bin/claude")
def test_execute_timeout(mock_which, mock_run, tmp_path):
    mock_run.side_effect = subprocess.TimeoutExpired(cmd="claude", timeout=600, output="half")
    result = ExternalCodeTool(tmp_path).execute("task", "plan")
    assert result.kind == ErrorKind.TIMEOUT
    assert result.output == "half"


@patch("autolead.escalation.subprocess.run")
@patch("autolead.escalation.shutil.which", return_value="/usr/bin/claude")
def test_execute_nonzero_exit(mock_which, mock_run, tmp_path):
    mock_run.return_value = _completed(returncode=2, stderr="rate limited")
    result = ExternalCodeTool(tmp_path).execute("task", "plan")
    assert result.success is False
    assert result.kind == ErrorKind.IO_ERROR
    assert result.error == "rate limited"
