"""
CLI entrypoint for ranking CVs against a job description.

Examples:

    python -m cv_rank.runner --job job.txt cvs/*.txt
    python -m cv_rank.runner --job job.txt cvs/*.txt --backend hash --model hash/64
    python -m cv_rank.runner --job job.txt cvs/*.txt --device cpu --results-path results/ranking.csv
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import logging
import os
import sys
from datetime import datetime
from typing import List, Optional, Sequence

from .config import BACKENDS, ISOLATION_MODES, EngineConfig, build_host
from .errors import RankerError
from .gateway import InferenceGateway
from .ranking import AnalysisStatus, JobAnalysis
from .schemas import ProgressEvent, ProgressStatus, RankedResult

logger = logging.getLogger(__name__)


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be a positive integer, got {value}")
    return number


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    defaults = EngineConfig.from_env()
    parser = argparse.ArgumentParser(description="Rank CVs against a job description.")
    parser.add_argument(
        "--job",
        required=True,
        help="Plain-text job description.",
    )
    parser.add_argument(
        "candidates",
        nargs="+",
        help="Plain-text candidate documents.",
    )
    parser.add_argument(
        "--model",
        default=defaults.model_id,
        help="Model id (Hugging Face repo, local directory, or hash/<dim>).",
    )
    parser.add_argument(
        "--backend",
        choices=BACKENDS,
        default=defaults.backend,
        help="Embedding backend.",
    )
    parser.add_argument(
        "--isolation",
        choices=ISOLATION_MODES,
        default=defaults.isolation,
        help="Run the model host in a separate process or an in-process thread.",
    )
    parser.add_argument(
        "--device",
        default=defaults.device,
        help="Primary device; the CPU is tried once if it fails.",
    )
    parser.add_argument(
        "--top",
        type=_positive_int,
        default=10,
        help="Number of ranked candidates to print.",
    )
    parser.add_argument(
        "--results-path",
        type=str,
        default="",
        help="Append ranked results to this CSV file.",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Logging level (DEBUG, INFO, WARNING, ...).",
    )
    args = parser.parse_args(argv)
    args.config = EngineConfig(
        model_id=args.model,
        backend=args.backend,
        isolation=args.isolation,
        device=args.device,
        fallback_device=defaults.fallback_device,
        cache_dir=defaults.cache_dir,
        endpoint=defaults.endpoint,
        revision=defaults.revision,
    )
    return args


def _configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        raise SystemExit(f"Invalid log level: {log_level}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _print_progress(event: ProgressEvent) -> None:
    if event.status is ProgressStatus.READY:
        print(f"Model {event.model_id} ready", file=sys.stderr)
    elif event.status is ProgressStatus.ERROR:
        print(f"Model {event.model_id} failed to load", file=sys.stderr)
    else:
        print(f"Downloading {event.file}: {event.percent:.0f}%", file=sys.stderr)


def _print_results(results: List[RankedResult], limit: int) -> None:
    if not results:
        print("No candidates could be ranked.")
        return
    width = max(len(r.name) for r in results[:limit])
    for rank, result in enumerate(results[:limit], start=1):
        print(f"{rank:>3}. {result.name:<{width}}  {result.score:.4f}")


def _write_results(path: str, model_id: str, results: List[RankedResult]) -> None:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    write_header = not os.path.exists(path)
    timestamp = datetime.now().isoformat()

    with open(path, "a", newline="") as f:
        writer = csv.DictWriter(
            f, fieldnames=["timestamp", "model_id", "rank", "candidate_id", "name", "score"]
        )
        if write_header:
            writer.writeheader()
        for rank, r in enumerate(results, start=1):
            writer.writerow(
                {
                    "timestamp": timestamp,
                    "model_id": model_id,
                    "rank": rank,
                    "candidate_id": r.candidate_id,
                    "name": r.name,
                    "score": r.score,
                }
            )


async def _run(args: argparse.Namespace) -> int:
    config: EngineConfig = args.config
    async with InferenceGateway(build_host(config), model_id=config.model_id) as gateway:
        gateway.on_progress(_print_progress)
        gateway.preload()

        analysis = JobAnalysis(gateway)
        analysis.load_job(args.job)
        if analysis.status is AnalysisStatus.ERROR:
            print(analysis.error_message, file=sys.stderr)
            return 2

        report = analysis.add_candidates(args.candidates)
        if report.failures:
            print(report.summary, file=sys.stderr)
        if not analysis.candidates:
            print("No readable candidate documents.", file=sys.stderr)
            return 2

        try:
            results = await analysis.run()
        except RankerError:
            print(analysis.error_message, file=sys.stderr)
            return 1

    _print_results(results, args.top)
    if args.results_path:
        _write_results(args.results_path, config.model_id, results)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.log_level)
    return asyncio.run(_run(args))


if __name__ == "__main__":
    sys.exit(main())
