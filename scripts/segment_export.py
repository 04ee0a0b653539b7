#!/usr/bin/env python3
"""CLI utility to segment an exported channel history into conversation threads."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from threadline.config import Settings
from threadline.engine import ConversationEngine
from threadline.models import Message


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Group an exported message history into conversation threads.")
    parser.add_argument("export", type=Path, help="JSON file holding a list of messages (or {'messages': [...]})")
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Destination JSON file (defaults to stdout)",
    )
    parser.add_argument(
        "--directory",
        type=Path,
        default=None,
        help="Optional JSON object mapping user ids to display names",
    )
    parser.add_argument("--no-merge", action="store_true", help="Skip the merge pass")
    parser.add_argument("--debug", action="store_true", help="Include keywords and centroids in the output")
    parser.add_argument(
        "--skip-validation",
        action="store_true",
        help="Do not probe the embedding backend before processing",
    )
    parser.add_argument("--log-level", default="WARNING", help="Python logging level")
    return parser.parse_args()


def load_messages(path: Path) -> list[Message]:
    with path.open("r", encoding="utf-8") as handle:
        data = json.load(handle)
    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        msg = f"Export file '{path}' must contain a list of messages."
        raise ValueError(msg)
    messages = [Message.from_dict(item) for item in data]
    floor = datetime.min.replace(tzinfo=timezone.utc)
    messages.sort(key=lambda message: message.created_at or floor)
    return messages


def main() -> int:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    directory = None
    if args.directory:
        with args.directory.open("r", encoding="utf-8") as handle:
            directory = {str(key): str(value) for key, value in json.load(handle).items()}

    engine = ConversationEngine.from_settings(
        Settings.from_env(),
        validate=not args.skip_validation,
        directory=directory,
    )
    result = engine.process_batch(load_messages(args.export), merge=not args.no_merge)
    payload = {
        "threads": [view.to_dict() for view in engine.views(include_debug=args.debug)],
        "stats": engine.stats.as_dict(),
        "merge": None
        if result.merge is None
        else {"passes": result.merge.passes, "merges": result.merge.merges, "converged": result.merge.converged},
    }

    if args.output is None:
        json.dump(payload, sys.stdout, ensure_ascii=False, indent=2)
        sys.stdout.write("\n")
        return 0

    args.output.parent.mkdir(parents=True, exist_ok=True)
    with args.output.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, ensure_ascii=False, indent=2)
    print(f"Wrote {len(payload['threads'])} threads -> {args.output}")
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entrypoint
    raise SystemExit(main())
