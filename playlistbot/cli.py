import argparse
import json
import os
from typing import List, Optional

from dotenv import load_dotenv

from .config import load_settings
from .errors import ConfigError
from .pipeline import GENERATION_FAILED_MESSAGE, PlaylistPipeline

QUESTION = "What kind of playlist would you like me to generate?"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="playlistbot",
        description="Generate a Spotify playlist and cover image from a free-text prompt.",
    )
    parser.add_argument("prompt", nargs="?", help="mood or theme for the playlist")
    parser.add_argument("--genres-limit", type=int, help="number of favorite genres to send")
    parser.add_argument("--concurrency", type=int, help="parallel track searches (1-10)")
    parser.add_argument("--timeout", type=float, help="abort the run after this many seconds")
    parser.add_argument("--json", action="store_true", help="print the run summary as JSON")
    return parser


def read_prompt(args: argparse.Namespace) -> Optional[str]:
    if args.prompt:
        return args.prompt.strip()
    print(QUESTION)
    try:
        return input().strip()
    except EOFError:
        return None


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    overrides = {}
    if args.genres_limit is not None:
        overrides["TOP_GENRES_LIMIT"] = str(args.genres_limit)
    if args.concurrency is not None:
        overrides["SEARCH_CONCURRENCY"] = str(args.concurrency)
    if args.timeout is not None:
        overrides["RUN_TIMEOUT_SECONDS"] = str(args.timeout)

    try:
        settings = load_settings({**os.environ, **overrides})
    except ConfigError as exc:
        if args.json:
            print(json.dumps(exc.to_body(), indent=2))
        else:
            print(f"Configuration error: {exc.message}")
        return 1

    prompt = read_prompt(args)
    if not prompt:
        print("A prompt is required.")
        return 1

    print("\nGenerating your playlist, please wait…\n")
    result = PlaylistPipeline.from_settings(settings).run(prompt)
    if args.json:
        print(json.dumps(result.to_body(), indent=2))
        return 0 if result.ok else 1

    if result.playlist is not None:
        print(f"{result.name}\n{result.description}\n{result.playlist.url}\n")
    if not result.ok:
        print(result.error or GENERATION_FAILED_MESSAGE)
        return 1

    print(f"Added {result.matched} tracks.")
    if result.unmatched:
        print(f"Skipped {len(result.unmatched)} tracks that could not be found.")
    if result.cover == "uploaded":
        print("Playlist cover image saved.")
    else:
        print("The playlist was created without a custom cover.")
    return 0
