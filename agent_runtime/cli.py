"""CLI entry point for the agent-runtime package."""

from __future__ import annotations

import logging
import sys
from typing import List, Optional

MIN_PYTHON = (3, 10)


def _python_version_str() -> str:
    return ".".join(str(part) for part in sys.version_info[:3])


def _ensure_supported_python() -> None:
    if sys.version_info < MIN_PYTHON:
        print(
            "Error: Python {} detected. agent-runtime requires Python {}.{}+.".format(
                _python_version_str(),
                MIN_PYTHON[0],
                MIN_PYTHON[1],
            ),
            file=sys.stderr,
        )
        sys.exit(2)


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


def _print_help() -> None:
    print("Agent Runtime CLI")
    print()
    print("Usage:")
    print("  agent-runtime                    Start the HTTP server")
    print("  agent-runtime check <spec.yaml>  Validate an agent spec and print a summary")
    print("  agent-runtime help               Show this message")
    print()
    print("Environment: AGENT_SPEC, PROVIDER, STORAGE, DB_PATH, AUTH_TOKEN, HOST, PORT, LOG_LEVEL")


def _print_startup_banner(agent: str, provider: str, host: str, port: int) -> None:
    provider_note = "no API key required" if provider == "stub" else "API key from .env"
    base = f"http://localhost:{port}" if host in ("0.0.0.0", "127.0.0.1") else f"http://{host}:{port}"
    print()
    print("Agent runtime started, agent spec: {}".format(agent))
    print("Provider: {} ({})".format(provider, provider_note))
    print()
    print("Docs:     {}/docs".format(base))
    print("Agent:    {}/agent".format(base))
    print("Sessions: {}/sessions".format(base))
    print()


def _check(path: str) -> int:
    from .errors import ConfigError
    from .loader import load_agent_spec, resolve_spec_path
    from .spec import ROOT_STATE

    try:
        spec = load_agent_spec(resolve_spec_path(path))
    except ConfigError as exc:
        print(f"Invalid agent spec: {exc}", file=sys.stderr)
        if exc.details:
            print(f"  details: {exc.details}", file=sys.stderr)
        return 1

    states = [n.id for n in spec.states.nodes if n.id != ROOT_STATE] if spec.states is not None else []
    print(f"OK  {spec.name} {spec.version}")
    print(f"  skills: {', '.join(spec.skills) or '-'}")
    print(f"  tools:  {', '.join(spec.tools) or '-'}")
    print(f"  states: {', '.join(states) or '-'}")
    if spec.states is not None:
        print(f"  initial: {spec.states.initial}  fallback: {spec.states.fallback or '-'}")
    print(f"  llms:   {', '.join(spec.llms) or 'default'}")
    return 0


def main(argv: Optional[List[str]] = None) -> None:
    """Run the agent runtime server or handle check/help commands."""
    from .config import get_settings

    args = list(sys.argv[1:] if argv is None else argv)
    settings = get_settings()
    _configure_logging(settings.log_level)

    if args:
        subcommand = args[0].strip().lower()
        if subcommand in {"-h", "--help", "help"}:
            _print_help()
            sys.exit(0)
        if subcommand == "check":
            if len(args) < 2:
                print("Usage: agent-runtime check <spec.yaml>", file=sys.stderr)
                sys.exit(2)
            sys.exit(_check(args[1]))
        print(f"Unknown command: {args[0]}", file=sys.stderr)
        _print_help()
        sys.exit(2)

    _ensure_supported_python()
    import uvicorn

    _print_startup_banner(
        agent=settings.agent_spec,
        provider=settings.provider_name,
        host=settings.http_host,
        port=settings.http_port,
    )

    uvicorn.run(
        "agent_runtime.main:app",
        host=settings.http_host,
        port=settings.http_port,
        factory=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
    sys.exit(0)
