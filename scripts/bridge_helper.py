"""Run a remote helper that answers bridge commands for one session."""

from __future__ import annotations

import argparse
import asyncio
import os

from dotenv import load_dotenv

from command_controller.bridge_helper import BridgeHelper
from command_controller.host_capabilities import build_helper_registry
from utils.log_utils import tprint


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Connect to a gesture bridge and execute its commands.")
    parser.add_argument("page_url", help="Page the helper reads when a command arrives.")
    parser.add_argument("--session", default="default", help="Bridge session id to join.")
    parser.add_argument(
        "--server",
        default=None,
        help="Bridge server origin (defaults to BRIDGE_URL or http://127.0.0.1:4173).",
    )
    parser.add_argument("--ollama-url", default=None, help="Ollama server used for text prompts.")
    parser.add_argument("--model", default="llama3.2", help="Model used when a command names none.")
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _build_parser().parse_args(argv)
    registry = build_helper_registry(args.page_url, ollama_url=args.ollama_url, model=args.model)
    helper = BridgeHelper(registry, session_id=args.session, base_url=args.server or os.getenv("BRIDGE_URL"))
    try:
        asyncio.run(helper.run())
    except KeyboardInterrupt:
        tprint("[HELPER] Interrupted. Exiting.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
