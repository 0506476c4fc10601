from autolead.events import (
    COMMENT_OUTPUT_CHARS,
    OUTCOME_BLOCKED,
    OUTCOME_CEILING,
    OUTCOME_COMPLETED,
    OUTCOME_WAITING,
    Delegating,
    DelegationFinished,
    Notice,
    PhaseAdvanced,
    QuestionAsked,
    RunFinished,
    RunStarted,
    render_event,
)


def test_run_started_is_silent():
    assert render_event(RunStarted("a/b", 1, "lead", "clarifying")) is None


def test_delegating():
    assert render_event(Delegating("scope")) == "**Team Lead**: Delegating to **scope** agent..."
    assert render_event(Delegating("scope", "be brief")).endswith("_Focus: be brief_")


def test_delegation_output_is_truncated():
    body = render_event(DelegationFinished("designer", True, "x" * (COMMENT_OUTPUT_CHARS + 50)))
    assert body.startswith("**designer** result (Success):")
    assert body.count("x") == COMMENT_OUTPUT_CHARS


def test_failed_delegation_shows_error():
    assert "boom" in render_event(DelegationFinished("tester", False, "", "boom"))
    assert render_event(DelegationFinished("tester", False, "")) is None


def test_question_and_notice():
    assert render_event(QuestionAsked("Which page?", "clarifier")).startswith("**Question from clarifier:**\n\nWhich page?")
    assert render_event(Notice("hello")) == "hello"
    assert render_event(PhaseAdvanced("scoping", "designing")) == "Moving from **scoping** to **designing**."


def test_completed_with_stats():
    body = render_event(RunFinished(OUTCOME_COMPLETED, "completed", "Done", iterations=4, delegations=3))
    assert body.startswith("**Ticket complete!**\n\nDone")
    assert "_Processed in 4 iterations with 3 delegations._" in body


def test_completed_without_stats():
    assert render_event(RunFinished(OUTCOME_COMPLETED, "completed", "Done")) == "**Ticket complete!**\n\nDone"


def test_blocked_and_ceiling():
    blocked = render_event(RunFinished(OUTCOME_BLOCKED, "paused", "No token", attempted="Pushing"))
    assert "**Reason:** No token" in blocked
    assert "**Attempted:** Pushing" in blocked
    ceiling = render_event(RunFinished(OUTCOME_CEILING, "paused", "Too long", delegations=7))
    assert ceiling.startswith("**Paused for review**: Too long")


def test_waiting_is_silent():
    assert render_event(RunFinished(OUTCOME_WAITING, "paused", "Which page?")) is None
