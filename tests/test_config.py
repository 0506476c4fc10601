import json

import pytest

from autolead.config import (
    DEFAULT_CONFIG,
    find_config_dir,
    load_config,
    read_dotenv,
    resolve_secret,
    write_default_config,
)


def test_read_dotenv(tmp_path):
    (tmp_path / ".env").write_text('# comment\nA=1\nB="quoted value"\nnot a pair\n\nC = spaced \n')
    assert read_dotenv(tmp_path / ".env") == {"A": "1", "B": "quoted value", "C": "spaced"}


def test_read_dotenv_missing(tmp_path):
    assert read_dotenv(tmp_path / ".env") == {}


def test_resolve_secret_prefers_dotenv(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("TOKEN=from-dotenv\n")
    monkeypatch.setenv("TOKEN", "from-env")
    assert resolve_secret("$TOKEN", tmp_path / ".env") == "from-dotenv"


def test_resolve_secret_falls_back_to_environment(tmp_path, monkeypatch):
    monkeypatch.setenv("ONLY_ENV", "value")
    assert resolve_secret("$ONLY_ENV", tmp_path / ".env") == "value"


def test_resolve_secret_literal_and_missing(tmp_path, monkeypatch):
    monkeypatch.delenv("NOPE_NOT_SET", raising=False)
    assert resolve_secret("literal", tmp_path / ".env") == "literal"
    assert resolve_secret("$NOPE_NOT_SET", tmp_path / ".env") is None
    assert resolve_secret(None, tmp_path / ".env") is None


def test_find_config_dir(tmp_path):
    assert find_config_dir(tmp_path) is None
    (tmp_path / ".autolead").mkdir()
    assert find_config_dir(tmp_path) == tmp_path / ".autolead"


def test_load_config_defaults(tmp_path):
    config_dir = tmp_path / ".autolead"
    config_dir.mkdir()
    config = load_config(config_dir)
    assert config["lead"] == DEFAULT_CONFIG["lead"]
    assert config["repo_path"] == str(tmp_path.resolve())
    assert config["sessions_dir"] == str((tmp_path / ".autolead" / "sessions").resolve())


def test_load_config_deep_merges(tmp_path):
    config_dir = tmp_path / ".autolead"
    config_dir.mkdir()
    (config_dir / "config.json").write_text(json.dumps({
        "lead": {"max_iterations": 5},
        "sandbox": {"allowed_commands": ["make test"]},
        "repo_path": "app",
    }))
    config = load_config(config_dir)
    assert config["lead"]["max_iterations"] == 5
    assert config["lead"]["max_tokens"] == DEFAULT_CONFIG["lead"]["max_tokens"]
    assert config["sandbox"]["allowed_commands"] == ["make test"]
    assert config["sandbox"]["protected_paths"] == DEFAULT_CONFIG["sandbox"]["protected_paths"]
    assert config["repo_path"] == str((tmp_path / "app").resolve())
    # Defaults are not mutated by the merge
    assert DEFAULT_CONFIG["lead"]["max_iterations"] == 25


def test_load_config_resolves_secrets(tmp_path):
    config_dir = tmp_path / ".autolead"
    config_dir.mkdir()
    (tmp_path / ".env").write_text("ANTHROPIC_API_KEY=sk-test\nGITHUB_TOKEN=gh-test\n")
    config = load_config(config_dir)
    assert config["model"]["api_key"] == "sk-test"
    assert config["github"]["token"] == "gh-test"


def test_load_config_invalid_json(tmp_path):
    config_dir = tmp_path / ".autolead"
    config_dir.mkdir()
    (config_dir / "config.json").write_text("{oops")
    with pytest.raises(SystemExit, match="invalid JSON"):
        load_config(config_dir)


def test_write_default_config(tmp_path):
    path = write_default_config(tmp_path / ".autolead")
    data = json.loads(path.read_text())
    assert data["model"]["api_key"] == "$ANTHROPIC_API_KEY"
    assert "npm test" in data["sandbox"]["allowed_commands"]
    with pytest.raises(SystemExit, match="already exists"):
        write_default_config(tmp_path / ".autolead")
