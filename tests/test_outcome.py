from autolead.model import CompletionRound, text_round
from autolead.outcome import (
    FINISH_TOOL_NAME,
    IMPLEMENTATION_SENTINELS,
    PHASE_SENTINELS,
    Blocked,
    Completed,
    Continuing,
    decode_outcome,
    parse_sentinels,
)


def _finish_round(text="", **inp):
    call = {"id": "f1", "name": FINISH_TOOL_NAME, "input": inp}
    return CompletionRound(content=text, tool_calls=[call], _provider="anthropic", _raw={"content_blocks": []})


# --- parse_sentinels ---

def test_plain_text_continues():
    assert parse_sentinels("Still working on it", IMPLEMENTATION_SENTINELS) == Continuing()


def test_complete_sentinel_is_stripped():
    outcome = parse_sentinels("All done. IMPLEMENTATION_COMPLETE", IMPLEMENTATION_SENTINELS)
    assert outcome == Completed("All done.")


def test_blocked_sentinel_reason_first_line():
    text = "IMPLEMENTATION_BLOCKED: missing API key\nmore detail"
    assert parse_sentinels(text, IMPLEMENTATION_SENTINELS) == Blocked("missing API key")


def test_blocked_takes_precedence_over_complete():
    text = "IMPLEMENTATION_COMPLETE? no. IMPLEMENTATION_BLOCKED: tests need a database"
    assert parse_sentinels(text, IMPLEMENTATION_SENTINELS) == Blocked("tests need a database")


def test_phase_sentinels_have_no_blocked_marker():
    assert parse_sentinels("PHASE_BLOCKED: x", PHASE_SENTINELS) == Continuing()
    assert parse_sentinels("Scope below.\nPHASE_COMPLETE", PHASE_SENTINELS) == Completed("Scope below.")


# --- decode_outcome ---

def test_finish_tool_completed():
    outcome = decode_outcome(_finish_round(status="completed", summary="Added button"), IMPLEMENTATION_SENTINELS)
    assert outcome == Completed("Added button")


def test_finish_tool_completed_falls_back_to_text():
    outcome = decode_outcome(_finish_round("Final notes", status="completed"), IMPLEMENTATION_SENTINELS)
    assert outcome == Completed("Final notes")


def test_finish_tool_blocked():
    outcome = decode_outcome(_finish_round(status="blocked", reason="no access"), IMPLEMENTATION_SENTINELS)
    assert outcome == Blocked("no access")


def test_finish_tool_wins_over_text_sentinel():
    rnd = _finish_round("IMPLEMENTATION_COMPLETE", status="blocked", reason="actually stuck")
    assert decode_outcome(rnd, IMPLEMENTATION_SENTINELS) == Blocked("actually stuck")


def test_text_round_uses_sentinels():
    rnd = text_round("done IMPLEMENTATION_COMPLETE")
    assert decode_outcome(rnd, IMPLEMENTATION_SENTINELS) == Completed("done")
