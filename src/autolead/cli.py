import argparse
import json
import os
import sys
from pathlib import Path

from loguru import logger

from autolead.config import CONFIG_DIR_NAME, find_config_dir, load_config, write_default_config
from autolead.escalation import ExternalCodeTool
from autolead.fileguard import SandboxError
from autolead.handlers import HandlerDeps, dispatch_event
from autolead.model import ModelError, make_completer
from autolead.notifier import GitHubNotifier, LogNotifier, NotifierError
from autolead.prompts import load_prompt_overrides
from autolead.session import PhaseTransitionError
from autolead.store import JsonSessionStore, StoreError
from autolead.types import ConfigDict


def configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            sys.stderr,
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(sys.stderr, level="INFO", format="{message}")


def _load(cwd: Path) -> tuple[dict, Path]:
    config_dir = find_config_dir(cwd)
    if config_dir is None:
        print(f"Error: no {CONFIG_DIR_NAME}/ directory found. Run `autolead init` first.", file=sys.stderr)
        raise SystemExit(1)
    return load_config(config_dir), config_dir


def read_payload(args) -> dict:
    """Payload from --payload, --payload-file, or $EVENT_PAYLOAD, in that order."""
    if args.payload_file:
        raw = Path(args.payload_file).read_text()
    else:
        raw = args.payload or os.environ.get("EVENT_PAYLOAD") or "{}"
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as e:
        print(f"Error: invalid payload JSON: {e}", file=sys.stderr)
        raise SystemExit(1)
    if not isinstance(payload, dict):
        print("Error: payload must be a JSON object.", file=sys.stderr)
        raise SystemExit(1)
    return payload


def build_handler_deps(config: ConfigDict, config_dir: Path, dry_run: bool = False) -> HandlerDeps:
    if dry_run:
        notifier = LogNotifier()
    else:
        token = config["github"].get("token")
        if not token:
            print("Error: no GitHub token configured (github.token / $GITHUB_TOKEN).", file=sys.stderr)
            raise SystemExit(1)
        notifier = GitHubNotifier(token, config["github"]["api_url"])
    code_tool = None
    if config["escalation"].get("enabled", True):
        code_tool = ExternalCodeTool(Path(config["repo_path"]), config["escalation"])
    return HandlerDeps(
        config=config,
        store=JsonSessionStore(Path(config["sessions_dir"])),
        notifier=notifier,
        complete=make_completer(config["model"]),
        code_tool=code_tool,
        prompt_overrides=load_prompt_overrides(config_dir),
    )


def cmd_init(args):
    path = write_default_config(Path(args.path) / CONFIG_DIR_NAME)
    print(f"Wrote {path}")


def cmd_event(args):
    event_type = args.event_type or os.environ.get("EVENT_TYPE")
    if not event_type:
        print("Error: no event type given (argument or $EVENT_TYPE).", file=sys.stderr)
        raise SystemExit(1)
    payload = read_payload(args)
    config, config_dir = _load(Path.cwd())
    deps = build_handler_deps(config, config_dir, dry_run=args.dry_run)
    try:
        events = dispatch_event(event_type, payload, deps)
    except (ValueError, PhaseTransitionError) as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    except (ModelError, StoreError, NotifierError, SandboxError) as e:
        logger.error(f"[HANDLER] {event_type} failed: {e}")
        raise SystemExit(1)
    print(f"{event_type}: {len(events)} event(s)")


def cmd_show(args):
    config, _ = _load(Path.cwd())
    store = JsonSessionStore(Path(config["sessions_dir"]))
    session = store.get(args.repo, args.issue)
    if session is None:
        print(f"No session for {args.repo}#{args.issue}.")
        return
    print(f"{session.repo}#{session.issue_number}  phase={session.phase.value}  status={session.status.value}")
    art = session.artifacts
    for name in ("scope", "design", "plan", "pending_plan", "approved_plan", "pr_url"):
        value = getattr(art, name)
        if value:
            print(f"\n## {name}\n{value}")
    if art.implemented_files:
        print(f"\n## implemented_files\n" + "\n".join(art.implemented_files))
    print("\n## conversation")
    for msg in session.conversation:
        tag = msg.metadata.get("phase", "")
        print(f"[{msg.role}] ({tag}) {msg.content}\n")


def cmd_sessions(args):
    config, _ = _load(Path.cwd())
    store = JsonSessionStore(Path(config["sessions_dir"]))
    sessions = store.list_sessions()
    if not sessions:
        print("No sessions.")
        return
    for s in sessions:
        mode = s.artifacts.mode or "?"
        print(f"{s.repo}#{s.issue_number}  {mode:<8} {s.phase.value:<13} {s.status.value}")


def main():
    parser = argparse.ArgumentParser(prog="autolead", description="Autonomous ticket-to-PR agent")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging with timestamps")
    subparsers = parser.add_subparsers(dest="command")

    init_parser = subparsers.add_parser("init", help="Create .autolead/config.json")
    init_parser.add_argument("path", nargs="?", default=".", help="Project path (default: current directory)")

    event_parser = subparsers.add_parser("event", help="Handle one incoming event")
    event_parser.add_argument("event_type", nargs="?", default=None, help="Event type (default: $EVENT_TYPE)")
    event_parser.add_argument("--payload", help="Event payload as JSON (default: $EVENT_PAYLOAD)")
    event_parser.add_argument("--payload-file", help="Read the event payload from a JSON file")
    event_parser.add_argument("--dry-run", action="store_true", help="Log comments and PRs instead of posting them")

    show_parser = subparsers.add_parser("show", help="Show one session")
    show_parser.add_argument("repo", help="owner/name")
    show_parser.add_argument("issue", type=int, help="Issue number")

    subparsers.add_parser("sessions", help="List sessions")

    args = parser.parse_args()
    configure_logging(args.verbose)

    if args.command == "init":
        cmd_init(args)
    elif args.command == "event":
        cmd_event(args)
    elif args.command == "show":
        cmd_show(args)
    elif args.command == "sessions":
        cmd_sessions(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
