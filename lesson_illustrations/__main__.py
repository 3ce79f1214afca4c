"""
Resolve slide images from the command line.

Usage:
    python -m lesson_illustrations resolve "photosynthesis diagram" --title "Photosynthesis"
    python -m lesson_illustrations module module.json --output resolved.json
"""
import sys
import json
import asyncio
import argparse
import logging
from pathlib import Path

# Fix Windows console encoding for Unicode
if sys.platform == 'win32':
    sys.stdout.reconfigure(encoding='utf-8', errors='replace')
    sys.stderr.reconfigure(encoding='utf-8', errors='replace')

# Load environment variables before config is read
from dotenv import load_dotenv
load_dotenv()

from lesson_illustrations.config import config
from lesson_illustrations.types import (
    Course,
    module_from_dict,
    module_to_dict,
    resolution_outcome_to_dict,
)
from lesson_illustrations.pipelines.course_state import CourseStore
from lesson_illustrations.pipelines.image_resolver import get_image_resolver
from lesson_illustrations.pipelines.module_images import select_images_for_module

logger = logging.getLogger("lesson_illustrations")


async def resolve_command(args: argparse.Namespace) -> int:
    outcome = await get_image_resolver().resolve_detailed(args.title, args.context, args.keywords)
    if args.verbose:
        print(json.dumps(resolution_outcome_to_dict(outcome), indent=2, ensure_ascii=False))
    else:
        print(outcome.url)
    return 0


async def module_command(args: argparse.Namespace) -> int:
    path = Path(args.file)
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, ValueError) as e:
        print(f"❌ Could not read {path}: {e}", file=sys.stderr)
        return 1

    if isinstance(data, list):
        data = {'slides': data}
    module = module_from_dict(data)
    store = CourseStore(Course(id='cli', topic=module.title, title=module.title, modules=(module,)))

    events = await select_images_for_module(
        0,
        module.slides,
        store.apply_image_resolved,
        cooldown_seconds=args.cooldown,
    )
    placeholders = sum(1 for e in events if e.is_placeholder)
    logger.info(f"Resolved {len(events)} images ({placeholders} placeholders)")

    output = json.dumps(module_to_dict(store.snapshot().modules[0]), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(output, encoding='utf-8')
        print(f"✅ Saved {args.output}")
    else:
        print(output)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m lesson_illustrations",
        description="Resolve slide image keywords to verified image URLs",
    )
    parser.add_argument("--log-level", default=config.log_level, help=f"Logging level (default: {config.log_level})")
    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve = subparsers.add_parser("resolve", help="Resolve one keyword to an image URL")
    resolve.add_argument("keywords", help="Image search keywords")
    resolve.add_argument("--title", "-t", default="", help="Slide title used for verification")
    resolve.add_argument("--context", "-c", default="", help="Slide text used for verification")
    resolve.add_argument("--verbose", "-v", action="store_true", help="Print the full resolution outcome as JSON")

    module = subparsers.add_parser("module", help="Resolve every image block of a module JSON file")
    module.add_argument("file", help="Module JSON ({'title', 'slides': [...]} or a list of slides)")
    module.add_argument("--output", "-o", help="Write the resolved module here instead of stdout")
    module.add_argument("--cooldown", type=float, default=None,
                        help=f"Seconds between images (default: {config.image_cooldown})")

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "resolve":
        return asyncio.run(resolve_command(args))
    return asyncio.run(module_command(args))


if __name__ == "__main__":
    sys.exit(main())
