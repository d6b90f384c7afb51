"""taleforge — run story turns from the terminal.

    taleforge STORY "I open the cellar door."     run one turn
    taleforge STORY --resume                      continue an interrupted turn
    taleforge STORY --discard                     drop an interrupted turn
    taleforge STORY --suggest                     refresh suggestions

Settings come from {data-dir}/settings.json. When no connection is stored,
TALEFORGE_PROVIDER_URL / TALEFORGE_API_KEY / TALEFORGE_MODEL (also read from
.env) provide a default one used for every service.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from pathlib import Path

from dotenv import load_dotenv

from taleforge.cancellation import CancelToken
from taleforge.config import (
    SERVICE_NAMES,
    Connection,
    GenerationPreset,
    Settings,
    UnconfiguredCapabilityError,
)
from taleforge.images import HttpImageGenerator, ImageTaskTracker
from taleforge.llm import EchoLLM, HttpLLM
from taleforge.pipeline import GenerationPipeline
from taleforge.pipeline import events
from taleforge.pipeline.phases.post import SuggestionsRefresher
from taleforge.storage import Storage

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "data"


class TerminalSink:
    """Prints narrative chunks as they stream and a summary line per event."""

    def emit(self, event: events.Event) -> None:
        if isinstance(event, events.NarrativeChunk):
            print(event.text, end="", flush=True)
        elif isinstance(event, events.PhaseStart):
            logger.info("→ %s", event.phase)
        elif isinstance(event, events.Error):
            level = "error" if event.fatal else "warning"
            print(f"\n[{level}] {event.phase}: {event.cause}", file=sys.stderr)
        elif isinstance(event, events.Aborted):
            print("\n[aborted]", file=sys.stderr)
        elif isinstance(event, events.ImageReady):
            print(f"\n[image ready] {event.image_id}")
        elif isinstance(event, events.ImageFailed):
            print(f"\n[image failed] {event.image_id}: {event.cause}", file=sys.stderr)


def apply_env_defaults(settings: Settings) -> Settings:
    """Fill in a default connection from the environment when none is stored."""
    url = os.getenv("TALEFORGE_PROVIDER_URL", "")
    if settings.connections or not url:
        return settings
    return settings.merged({
        "connections": [Connection(
            name="default", provider_url=url, api_key=os.getenv("TALEFORGE_API_KEY", ""),
        ).model_dump()],
        "presets": [GenerationPreset(
            name="default", connection="default", model=os.getenv("TALEFORGE_MODEL", ""),
        ).model_dump()],
        "services": {name: "default" for name in SERVICE_NAMES},
    })


def _print_followups(items) -> None:
    for i, item in enumerate(items, 1):
        print(f"  {i}. {item.text}")


async def _run(args: argparse.Namespace) -> int:
    storage = Storage(args.data_dir)
    settings = apply_env_defaults(await storage.get_settings())
    config = settings.snapshot()

    llm = EchoLLM() if args.echo else HttpLLM()
    image_generator = None
    image_conn = config.image_analysis
    if config.image_enabled and image_conn is not None:
        image_generator = HttpImageGenerator(
            image_conn.provider_url, image_conn.api_key, timeout=config.images.timeout,
        )
    image_tasks = ImageTaskTracker()
    pipeline = GenerationPipeline(
        llm=llm, store=storage, sink=TerminalSink(),
        image_generator=image_generator, image_tasks=image_tasks,
    )

    if args.discard:
        await pipeline.discard(args.story)
        return 0

    if args.suggest:
        items = await SuggestionsRefresher(llm, storage).refresh(args.story, config)
        _print_followups(items)
        return 0

    cancel = CancelToken()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, cancel.cancel)

    if args.resume:
        ctx = await pipeline.resume(args.story, cancel=cancel)
        if ctx is None:
            print(f"No interrupted turn for story {args.story!r}.", file=sys.stderr)
            return 1
    else:
        if not args.input:
            print("An input is required unless --resume, --discard or --suggest is given.", file=sys.stderr)
            return 2
        try:
            ctx = await pipeline.run(args.story, args.input, config, cancel=cancel)
        except UnconfiguredCapabilityError as e:
            print(e, file=sys.stderr)
            return 2

    print()
    if ctx.translation:
        print(f"\n{ctx.translation}")
    _print_followups(ctx.suggestions or ctx.action_choices)
    await image_tasks.drain(timeout=config.images.timeout)
    return 0 if ctx.phase == "done" else 1


def main() -> None:
    parser = argparse.ArgumentParser(description="taleforge story turn runner")
    parser.add_argument("story", help="Story id (directory under the data dir)")
    parser.add_argument("input", nargs="?", default="", help="User input for this turn")
    parser.add_argument("--data-dir", type=Path,
                        default=Path(os.getenv("TALEFORGE_DATA_DIR", DEFAULT_DATA_DIR)),
                        help="Data storage directory (default: ./data)")
    parser.add_argument("--resume", action="store_true", help="Continue an interrupted turn")
    parser.add_argument("--discard", action="store_true", help="Discard an interrupted turn")
    parser.add_argument("--suggest", action="store_true", help="Refresh suggestions")
    parser.add_argument("--echo", action="store_true", help="Use EchoLLM instead of a backend")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
