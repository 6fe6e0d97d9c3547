"""Command-line entry point: manage the knowledge backend and talk to it."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from typing import Any, Callable

from .config import Settings, load_settings
from .errors import GraphKeeperError, UnsupportedDocumentError
from .runtime import GraphKeeper, configure_logging

_DEFAULT_SERVE_HOST = "127.0.0.1"
_DEFAULT_SERVE_PORT = 8765


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="graphkeeper",
        description="Supervise a LightRAG knowledge server and query it",
    )
    parser.add_argument(
        "--config",
        dest="config_file",
        help="YAML settings file (defaults to $GRAPHKEEPER_CONFIG_FILE)",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("env", help="Write the backend .env file and print its location")
    commands.add_parser(
        "start",
        help="Start the backend unless it is already answering; a spawned backend runs until interrupted",
    )
    commands.add_parser("restart", help="Stop the backend and run a fresh one until interrupted")
    commands.add_parser("health", help="Exit 0 when the backend answers its health check")

    ingest = commands.add_parser("ingest", help="Send one document to the knowledge graph")
    ingest.add_argument("path", help="Document path (relative paths resolve against the document root)")
    ingest.add_argument("--wait", action="store_true", help="Watch the pipeline until processing finishes")

    ingest_folder = commands.add_parser("ingest-folder", help="Send every supported file in a folder")
    ingest_folder.add_argument("path", help="Folder path (relative paths resolve against the document root)")
    ingest_folder.add_argument("--wait", action="store_true", help="Watch the pipeline until processing finishes")

    query = commands.add_parser("query", help="Ask the knowledge graph a question")
    query.add_argument("text", help="The question")
    query.add_argument(
        "--file",
        dest="files",
        action="append",
        default=[],
        help="Answer from this file only (repeatable)",
    )
    query.add_argument(
        "--folder",
        dest="folders",
        action="append",
        default=[],
        help="Answer from the files in this folder only (repeatable)",
    )

    serve = commands.add_parser("serve", help="Run the HTTP control API")
    serve.add_argument("--host", default=_DEFAULT_SERVE_HOST)
    serve.add_argument("--port", type=int, default=_DEFAULT_SERVE_PORT)
    return parser


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


async def _hold_backend(keeper: GraphKeeper) -> int:
    code = await keeper.supervisor.wait()
    if code is None:
        print(f"Backend already answering at {keeper.settings.base_url}")
        return 0
    print(f"Backend exited with code {code}")
    return 0 if code == 0 else 1


async def _run(keeper: GraphKeeper, args: argparse.Namespace) -> int:
    if args.command == "start":
        if not await keeper.start_backend():
            return 1
        print(f"Backend {keeper.supervisor.state.value} at {keeper.settings.base_url}")
        return await _hold_backend(keeper)

    if args.command == "restart":
        await (await keeper.restart_backend())
        return await _hold_backend(keeper)

    if args.command == "health":
        healthy = await keeper.backend_healthy()
        print("healthy" if healthy else "unreachable")
        return 0 if healthy else 1

    if args.command == "ingest":
        job = await keeper.ingest_document(args.path)
        if args.wait and job.succeeded:
            await keeper.wait_for_pipeline()
        _print_json(job.to_dict())
        return 0 if job.succeeded else 1

    if args.command == "ingest-folder":
        report = await keeper.ingest_folder(args.path)
        if args.wait:
            await keeper.wait_for_pipeline()
        _print_json(report.to_dict())
        return 0 if report.failed == 0 else 1

    if args.command == "query":
        results = await keeper.query(args.text, files=args.files, folders=args.folders)
        _print_json([result.to_dict() for result in results])
        return 0

    raise ValueError(f"Unknown command: {args.command}")


async def _session(keeper: GraphKeeper, args: argparse.Namespace) -> int:
    try:
        return await _run(keeper, args)
    finally:
        # A backend spawned by this process cannot outlive its pipes.
        if keeper.supervisor.has_process:
            await keeper.aclose()
        else:
            await keeper.detach()


def _serve(keeper: GraphKeeper, host: str, port: int) -> int:
    import uvicorn

    from .app import create_app

    uvicorn.run(create_app(runtime=keeper), host=host, port=port)
    return 0


def main(
    argv: list[str] | None = None,
    *,
    runtime_factory: Callable[[Settings], GraphKeeper] = GraphKeeper,
) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    configure_logging()
    keeper = runtime_factory(load_settings(args.config_file))

    if args.command == "env":
        try:
            path = keeper.write_env()
        except GraphKeeperError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 2
        print(path)
        return 0

    if args.command == "serve":
        return _serve(keeper, args.host, args.port)

    try:
        return asyncio.run(_session(keeper, args))
    except UnsupportedDocumentError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 3
    except GraphKeeperError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:  # pragma: no cover - interactive stop
        return 130


if __name__ == "__main__":  # pragma: no cover - CLI entry
    sys.exit(main())
