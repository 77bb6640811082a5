"""Recompute one training's progress for every learner who has a record.

Run after adding or removing a training's mini-trainings, video or quiz.
Completion never reverts, so learners whose recomputed progress fell below
100% while staying completed are listed separately.
"""
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db  # noqa: E402
from engines.progression import ProgressAggregator  # noqa: E402


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--training-id", required=True, help="Training to recalculate")
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the per-user report as JSON instead of a summary",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    db.init()
    try:
        reports = ProgressAggregator().recalculate_training_for_all_users(args.training_id)
    except LookupError as exc:
        print(str(exc), file=sys.stderr)
        return 2

    if args.json:
        print(
            json.dumps(
                [
                    {
                        "userId": report.user_id,
                        "previousProgress": report.previous_progress,
                        "progress": report.progress,
                        "isCompleted": report.is_completed,
                        "courseRecalculated": report.course_recalculated,
                        "notes": report.notes,
                    }
                    for report in reports
                ],
                indent=2,
            )
        )
        return 0

    changed = [r for r in reports if r.progress != r.previous_progress]
    print(f"Training {args.training_id}: {len(reports)} learners, {len(changed)} changed")
    for report in changed:
        print(f"  {report.user_id}: {report.previous_progress:.2f}% -> {report.progress:.2f}%")
    sticky = [r for r in reports if r.notes]
    if sticky:
        print("Completed below 100% (completion kept):")
        for report in sticky:
            print(f"  {report.user_id}: {report.progress:.2f}%")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
