from __future__ import annotations

import tomllib
from importlib import resources
from pathlib import Path


def _load_builtin() -> dict:
    """Load builtin default prompts via importlib.resources (wheel-safe)."""
    ref = resources.files("autolead").joinpath("data/default_prompts.toml")
    with resources.as_file(ref) as path:
        with open(path, "rb") as f:
            return tomllib.load(f)


_DEFAULTS = _load_builtin()

LEAD_SYSTEM_PROMPT: str = _DEFAULTS["lead"]["system"].strip()
LEAD_NUDGE: str = _DEFAULTS["lead"]["nudge"]
THINK_ACK: str = _DEFAULTS["lead"]["think_ack"]

CAPABILITY_PROMPTS: dict[str, str] = {
    name: data["system"].strip()
    for name, data in _DEFAULTS["capabilities"].items()
}

IMPLEMENTER_KICKOFF: str = _DEFAULTS["capabilities"]["implementer"]["kickoff"]
IMPLEMENTER_NUDGE: str = _DEFAULTS["capabilities"]["implementer"]["nudge"]
EXPLORATION_SUPPLEMENT: str = _DEFAULTS["exploration"]["supplement"].strip()
QA_REVIEW_PROMPT: str = _DEFAULTS["qa_review"]["system"].strip()


def load_prompt_overrides(config_dir: Path) -> dict[str, str]:
    """Capability system prompts from a project's prompts.toml, if present."""
    path = config_dir / "prompts.toml"
    if not path.exists():
        return {}
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return {
        name: section["system"].strip()
        for name, section in data.get("capabilities", {}).items()
        if "system" in section
    }
