#!/usr/bin/env python3
"""
Download a model's transformer files into the cv_rank cache ahead of time.
Output: config, tokenizer and weight files under <cache-dir>/<org>--<name>/.
"""
import argparse
import sys

from cv_rank.config import EngineConfig
from cv_rank.errors import ModelFetchError
from cv_rank.fetch import ModelFetcher
from cv_rank.schemas import ProgressEvent, ProgressStatus


def _print_progress(event: ProgressEvent) -> None:
    if event.status is ProgressStatus.PROGRESS:
        print(f"  {event.file}: {event.percent:.0f}%", end="\r", flush=True)
        if event.percent >= 100:
            print()


def main():
    defaults = EngineConfig.from_env()
    parser = argparse.ArgumentParser(description="Prefetch an embedding model into the local cache")
    parser.add_argument("--model", default=defaults.model_id, help="Model id on the hub")
    parser.add_argument("--cache-dir", default=defaults.cache_dir, help="Cache directory")
    parser.add_argument("--endpoint", default=defaults.endpoint, help="Hub endpoint")
    parser.add_argument("--revision", default=defaults.revision, help="Branch, tag or commit")
    args = parser.parse_args()

    print(f"Fetching {args.model} into {args.cache_dir} ...")
    try:
        with ModelFetcher(args.cache_dir, endpoint=args.endpoint, revision=args.revision) as fetcher:
            target = fetcher.fetch(args.model, on_progress=_print_progress)
    except ModelFetchError as e:
        print(f"Prefetch failed: {e}", file=sys.stderr)
        sys.exit(1)
    print("Done. Files in", target)
    for f in sorted(target.iterdir()):
        print(" ", f.name)


if __name__ == "__main__":
    main()
