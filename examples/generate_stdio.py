#!/usr/bin/env python3
"""Run generations through a persistent codex app-server process.

This example demonstrates:
- one app-server process shared by several generations
- single-shot generation and streaming
- command override for launching app-server
"""

from __future__ import annotations

import argparse
import asyncio
import shlex
import sys

from codex_app_server_provider import (
    CodexAppServerSettings,
    CodexConfigError,
    configure_logging,
    create_codex_app_server,
)

DEFAULT_PROMPTS = [
    "In one sentence, what is a JSON-RPC notification?",
    "Give me three names for a command line tool that tails logs.",
]


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the stdio example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument("--model", help="Model id sent with thread/start and turn/start.")
    parser.add_argument(
        "--cmd",
        help="Command used to launch app-server, e.g. 'codex app-server'.",
    )
    parser.add_argument(
        "--stream",
        action="store_true",
        help="Stream parts instead of waiting for whole results.",
    )
    parser.add_argument(
        "--reasoning",
        action="store_true",
        help="Include reasoning text in the output.",
    )
    parser.add_argument("--log-level", default="WARNING")
    parser.add_argument("--log-format", choices=("console", "json"), default="console")
    return parser.parse_args()


def _settings(args: argparse.Namespace) -> CodexAppServerSettings:
    overrides: dict[str, object] = {"include_reasoning": args.reasoning}
    if args.cmd:
        argv = shlex.split(args.cmd)
        # `app-server` is appended by the settings.
        if len(argv) > 1 and argv[1] == "app-server":
            argv = [argv[0], *argv[2:]]
        overrides["codex_path"] = argv[0]
        overrides["args"] = argv[1:]
    return CodexAppServerSettings.from_env(**overrides)


async def run_session(args: argparse.Namespace) -> int:
    """Run every prompt in order and print the results."""
    prompts = args.prompts or DEFAULT_PROMPTS
    try:
        settings = _settings(args)
    except CodexConfigError as exc:
        print(f"[error] config: {exc}", file=sys.stderr)
        return 2

    async with create_codex_app_server(settings) as provider:
        model = provider(args.model)
        for index, prompt in enumerate(prompts, start=1):
            print(f"\n[user:{index}] {prompt}")
            if args.stream:
                await _stream_one(model, prompt, index)
                continue

            result = await model.generate(prompt)
            for warning in result.warnings:
                print(f"[warn] {warning.message}", file=sys.stderr)
            print(f"[assistant:{index}] {result.text}")
            print(
                "[meta]"
                f" finish={result.finish_reason.unified}"
                f" input_tokens={result.usage.input_tokens.total}"
                f" output_tokens={result.usage.output_tokens.total}"
            )
    return 0


async def _stream_one(model, prompt: str, index: int) -> None:
    print(f"[assistant:{index}] ", end="", flush=True)
    async for part in model.stream(prompt):
        if part.type in ("text-delta", "reasoning-delta"):
            print(part.delta, end="", flush=True)
        elif part.type == "error":
            print(f"\n[error] {part.message}", file=sys.stderr)
        elif part.type == "finish":
            print(f"\n[meta] finish={part.finish_reason.unified}")


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    configure_logging(args.log_level, args.log_format)
    try:
        raise SystemExit(asyncio.run(run_session(args)))
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled session", file=sys.stderr)
        raise SystemExit(130)


if __name__ == "__main__":
    main()
