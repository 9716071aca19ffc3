"""Command-line entry point: ``sandpiper "Build a todo CLI"``."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Sequence

import structlog

from sandpiper.llm.client import LiteLLMClient, ModelInvocationError, resolve_model
from sandpiper.models.config import SandpiperConfig
from sandpiper.models.message import RunResult
from sandpiper.sandbox.docker import DockerSandbox, SandboxError
from sandpiper.session import AgentSession
from sandpiper.store.session_store import SessionNotFoundError

EXIT_INTERRUPTED = 130


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="sandpiper",
        description="Run an autonomous coding agent inside a Docker sandbox.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  ANTHROPIC_API_KEY=sk-... sandpiper "Create a hello-world HTTP server with Bun"

  # Resume an interrupted session
  sandpiper "" --session sess_01JXYZ6K3MNPQR4STUVWXYZ01
""",
    )
    p.add_argument("task", help="The task for the agent to complete")
    p.add_argument(
        "--session",
        default=None,
        metavar="ID",
        help="Resume an existing session instead of creating a new one",
    )
    p.add_argument(
        "--model",
        default=None,
        help="litellm model string (default: $SANDPIPER_MODEL or a provider default)",
    )
    p.add_argument(
        "--db",
        default=None,
        metavar="PATH",
        help="SQLite database path (default: ~/.sandpiper/agent.db)",
    )
    p.add_argument(
        "--max-steps",
        type=int,
        default=None,
        metavar="N",
        dest="max_steps",
        help="Maximum agent steps before the session is marked failed (default: 50)",
    )
    p.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return p.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def validate_environment(model: str | None = None) -> str:
    """Resolve the model, exiting with status 1 when no API key is configured."""
    try:
        return resolve_model(model)
    except ModelInvocationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)


def build_config(args: argparse.Namespace, model: str) -> SandpiperConfig:
    config = SandpiperConfig.default()
    agent_update: dict[str, object] = {"model": model}
    if args.max_steps is not None:
        agent_update["max_steps"] = args.max_steps
    update: dict[str, object] = {"agent": config.agent.model_copy(update=agent_update)}
    if args.db is not None:
        update["store"] = config.store.model_copy(update={"db_path": args.db})
    return config.model_copy(update=update)


async def run_agent(args: argparse.Namespace, config: SandpiperConfig) -> RunResult:
    """Create or resume the session, run it in a fresh container, always clean up."""
    model_client = LiteLLMClient(config.agent.model or resolve_model())
    sandbox = DockerSandbox(config.sandbox)

    if args.session:
        session = await AgentSession.load(
            args.session, model_client=model_client, sandbox=sandbox, config=config
        )
    else:
        session = await AgentSession.create(
            args.task, model_client=model_client, sandbox=sandbox, config=config
        )
    print(f"Session: {session.id}")

    try:
        await sandbox.start(session.id)
        return await session.run()
    except (asyncio.CancelledError, KeyboardInterrupt):
        await session.mark_failed("Interrupted by user")
        raise
    except SandboxError:
        await session.mark_failed("Sandbox could not be started")
        raise
    finally:
        await sandbox.cleanup()
        await session.close()


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)
    model = validate_environment(args.model)
    config = build_config(args, model)

    try:
        result = asyncio.run(run_agent(args, config))
    except KeyboardInterrupt:
        print("\nInterrupted. Session marked as failed.", file=sys.stderr)
        return EXIT_INTERRUPTED
    except SessionNotFoundError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except SandboxError as exc:
        print(f"Error: {exc.message} ({exc.code})", file=sys.stderr)
        return 1

    print(f"Status: {result.status} after {result.steps} steps")
    if result.compaction_rounds:
        print(f"Compaction rounds: {result.compaction_rounds}")
    if result.final_text:
        print()
        print(result.final_text)
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
    return 0 if result.status == "completed" else 1


if __name__ == "__main__":
    sys.exit(main())
