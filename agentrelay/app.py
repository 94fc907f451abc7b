"""agentrelay: main application entry point."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from dataclasses import replace
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.errors import InvalidSessionId


def _configure_logging(log_level: str) -> Path:
    log_dir = Path.home() / ".agentrelay" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentrelay-server.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(args) -> RelayConfig:
    config = RelayConfig.from_env()
    config_path = args.config
    if not config_path:
        candidate = Path(args.cwd or config.resolved_cwd) / ".agentrelay.yaml"
        if candidate.exists():
            config_path = str(candidate)
    if config_path:
        from agentrelay.engine.yaml_config import load_yaml_config

        config = load_yaml_config(config_path, base=config)

    overrides = {}
    if args.host is not None:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.cwd is not None:
        overrides["cwd"] = str(Path(args.cwd).expanduser().resolve())
    return replace(config, **overrides) if overrides else config


def _print_sessions(config: RelayConfig) -> None:
    from agentrelay.shared.services.transcript.reader import (
        list_sessions,
        project_log_dir,
    )

    log_dir = project_log_dir(config.resolved_cwd, Path(config.projects_root).expanduser())
    summaries = sorted(
        (s for s in list_sessions(log_dir, title_limit=config.title_limit) if not s.is_sidechain),
        key=lambda s: s.modified_at,
        reverse=True,
    )
    if not summaries:
        print("No saved sessions.")
        return
    for s in summaries:
        branch = f" [{s.branch_label}]" if s.branch_label else ""
        title = s.first_user_text or "Untitled session"
        print(f"  {s.session_id}  {s.modified_at}{branch}  {title}")


def _print_history(config: RelayConfig, session_id: str) -> None:
    from agentrelay.shared.models.timeline import timeline_to_dicts
    from agentrelay.shared.services.transcript.reader import (
        read_session,
        transcript_path,
    )

    path = transcript_path(session_id, config.resolved_cwd, Path(config.projects_root).expanduser())
    history = read_session(path, title_limit=config.title_limit)
    print(json.dumps({
        "sessionId": session_id,
        "isCompacted": history.compacted,
        "firstPrompt": history.first_user_text,
        "messages": timeline_to_dicts(history.timeline),
    }, indent=2, ensure_ascii=False))


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="agentrelay: stream agent CLI sessions over HTTP + SSE",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Interface to listen on (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int,
        help="Server port (0=random available port)",
    )
    parser.add_argument(
        "--cwd", metavar="DIR",
        help="Project directory the agent runs in (default: current directory)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file with a 'relay:' section",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List saved sessions for the project and exit",
    )
    parser.add_argument(
        "--history", metavar="SESSION_ID",
        help="Print a session's reconstructed history as JSON and exit",
    )
    args = parser.parse_args()

    config = _load_config(args)

    if args.list:
        _print_sessions(config)
        sys.exit(0)

    if args.history:
        try:
            _print_history(config, args.history)
        except InvalidSessionId as exc:
            print(str(exc), file=sys.stderr)
            sys.exit(2)
        sys.exit(0)

    from agentrelay.web.server import RelayServer

    log_file = _configure_logging(config.log_level)
    logging.getLogger(__name__).info(
        "Starting agentrelay server cwd=%s port=%s config=%s log=%s",
        config.resolved_cwd,
        config.port,
        args.config or "<none>",
        log_file,
    )
    server = RelayServer(config)
    try:
        asyncio.run(server.start())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
