#!/usr/bin/env python3
"""Run a small multi-turn Codex app-server chat over stdio transport.

This example demonstrates:
- explicit initialize handshake
- multi-turn chat reusing one thread id
- streamed agent message deltas printed as they arrive
- approval policy selection (accept, decline, or ask on the terminal)
- degraded turn results on timeout
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import shlex
import sys

from codex_app_session import (
    ApprovalDecision,
    ApprovalRequest,
    CodexLaunchError,
    CodexRemoteClosedError,
    CodexRemoteError,
    CodexSession,
    CodexTimeoutError,
    NotificationPump,
    TurnRunner,
)

DEFAULT_PROMPTS = [
    "I am testing a Python session client for codex app-server.",
    "Now summarize what you just said in one sentence.",
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
    parser.add_argument(
        "--cmd",
        help="Command used to launch app-server, e.g. 'codex app-server'.",
    )
    parser.add_argument(
        "--approval",
        choices=["accept", "decline", "ask"],
        default="accept",
        help="How to answer command/file-change approval requests.",
    )
    parser.add_argument(
        "--turn-timeout",
        type=float,
        default=180.0,
        help="Per-turn deadline in seconds (<=0 waits until the turn completes).",
    )
    parser.add_argument("--verbose", action="store_true", help="Log wire traffic.")
    return parser.parse_args()


async def _ask(request: ApprovalRequest) -> ApprovalDecision:
    subject = request.command or request.reason or request.method
    answer = await asyncio.to_thread(input, f"\n[approve] {subject} ? [y/N] ")
    return "accept" if answer.strip().lower() in ("y", "yes") else "decline"


def _print_delta(delta: str) -> None:
    sys.stdout.write(delta)
    sys.stdout.flush()


async def run_session(args: argparse.Namespace) -> int:
    """Run multi-turn chat session and print structured output."""
    prompts = args.prompts or DEFAULT_PROMPTS
    command = shlex.split(args.cmd) if args.cmd else None
    turn_timeout = args.turn_timeout if args.turn_timeout > 0 else None

    try:
        async with CodexSession.connect_stdio(command=command) as session:
            init = await session.initialize()
            print(f"[init] user_agent={init.user_agent or 'unknown'}")

            pump = NotificationPump(
                session,
                approval_policy=_ask if args.approval == "ask" else args.approval,
            )
            runner = TurnRunner(session, pump, turn_timeout=turn_timeout)
            thread_id = await session.start_thread()

            for index, prompt in enumerate(prompts, start=1):
                print(f"\n[user:{index}] {prompt}")
                print(f"[assistant:{index}] ", end="")
                result = await runner.run_turn(thread_id, prompt, on_delta=_print_delta)
                print()
                print(
                    "[meta]"
                    f" status={result.status}"
                    f" state={result.state.value}"
                    f" items={len(result.items)}"
                    f" events={len(result.raw_events)}"
                )
                for error in result.errors:
                    print(f"[turn-error] {error}", file=sys.stderr)
        return 0
    except CodexLaunchError as exc:
        print(f"[error] launch: {exc}", file=sys.stderr)
        return 5
    except CodexTimeoutError as exc:
        print(f"[error] timeout: {exc}", file=sys.stderr)
        return 2
    except CodexRemoteError as exc:
        details = f" code={exc.code}" if exc.code is not None else ""
        print(f"[error] remote:{details} {exc}", file=sys.stderr)
        return 3
    except CodexRemoteClosedError as exc:
        print(f"[error] app-server closed: {exc}", file=sys.stderr)
        return 4
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled session", file=sys.stderr)
        return 130


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    raise SystemExit(asyncio.run(run_session(args)))


if __name__ == "__main__":
    main()
