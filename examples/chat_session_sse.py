#!/usr/bin/env python3
"""Run a small multi-turn ARIA chat over the SSE streaming endpoint.

This example demonstrates:
- endpoint and auth configuration from flags or environment
- resuming a known thread from stored history
- token-by-token rendering of the assistant reply
- thread binding notification and side-channel program patches
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

from aria_chat import (
    AriaStreamClient,
    ConversationController,
    RestHistoryStore,
    SideChannelEvent,
    SideChannelRelay,
    suggested_prompts,
    thread_path,
)


def parse_args() -> argparse.Namespace:
    """Parse CLI options for the SSE example."""
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--url",
        default=os.getenv("ARIA_STREAM_URL"),
        help="Streaming endpoint URL.",
    )
    parser.add_argument(
        "--token",
        default=os.getenv("ARIA_ACCESS_TOKEN"),
        help="Optional bearer token for the user session.",
    )
    parser.add_argument(
        "--thread-id",
        help="Resume an existing thread; prior turns are loaded over REST.",
    )
    parser.add_argument(
        "--prompt",
        action="append",
        dest="prompts",
        help="Prompt to send. Can be provided multiple times.",
    )
    parser.add_argument(
        "--inactivity-timeout",
        type=float,
        default=120.0,
        help="Stream inactivity timeout in seconds (<=0 disables it).",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args()


def _print_fragment(delta: str) -> None:
    sys.stdout.write(delta)
    sys.stdout.flush()


def _print_patch(event: SideChannelEvent | None) -> None:
    if event is not None:
        print(f"\n[patch] {event.kind} id={event.id} payload={event.payload}")


async def run_session(args: argparse.Namespace) -> int:
    """Run a multi-turn chat session and print the streamed replies."""
    inactivity_timeout = args.inactivity_timeout if args.inactivity_timeout > 0 else None
    relay = SideChannelRelay()
    relay.subscribe(_print_patch)

    client = AriaStreamClient.connect_sse(
        url=args.url,
        token=args.token,
        side_channel=relay,
    )
    await client.start()

    if args.thread_id:
        controller = await ConversationController.hydrate(
            client,
            RestHistoryStore.from_env(),
            args.thread_id,
            inactivity_timeout=inactivity_timeout,
        )
    else:
        controller = ConversationController(
            client,
            greeting="Hi! I'm ARIA. What would you like to know?",
            inactivity_timeout=inactivity_timeout,
        )
    controller.on_bound(lambda thread_id: print(f"\n[bound] {thread_path(thread_id)}"))

    prompts = args.prompts or suggested_prompts(limit=2)
    exit_code = 0
    try:
        async with controller:
            for index, prompt in enumerate(prompts, start=1):
                print(f"\n[user:{index}] {prompt}")
                print(f"[assistant:{index}] ", end="")
                seen = 0

                sending = asyncio.create_task(controller.send_message(prompt))
                while not sending.done():
                    text = controller.turns[-1].text
                    _print_fragment(text[seen:])
                    seen = len(text)
                    await asyncio.sleep(0.05)

                result = sending.result()
                _print_fragment(controller.turns[-1].text[seen:])
                print(f"\n[meta] status={result.status} thread_id={result.thread_id}")
                if result.status != "completed":
                    exit_code = 1
        return exit_code
    except KeyboardInterrupt:
        print("\n[interrupt] user cancelled session", file=sys.stderr)
        return 130
    finally:
        await client.close()


def main() -> None:
    """CLI entrypoint."""
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    raise SystemExit(asyncio.run(run_session(args)))


if __name__ == "__main__":
    main()
