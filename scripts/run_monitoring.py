#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import os
import pathlib
import signal
import sys

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotenv import load_dotenv

from compliance_monitor.errors import JobLockBusy
from compliance_monitor.models import RUN_SUCCESS
from compliance_monitor.runtime import build_runtime_from_env


def main() -> int:
    parser = argparse.ArgumentParser(description="Run compliance change monitoring.")
    parser.add_argument(
        "--jurisdiction",
        action="append",
        default=[],
        help="Restrict the run to one jurisdiction id (repeatable).",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Stay resident and run on the monthly schedule.",
    )
    parser.add_argument(
        "--iterations",
        type=int,
        default=0,
        help="With --schedule, stop after N scheduled runs (0 means run forever).",
    )
    parser.add_argument("--env-file", default=".env", help="dotenv file path")
    args = parser.parse_args()

    load_dotenv(args.env_file)
    logging.basicConfig(
        level=os.environ.get("MONITOR_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    runtime = build_runtime_from_env()
    signal.signal(signal.SIGTERM, lambda signum, frame: runtime.cancel())

    if args.schedule:
        summaries = runtime.run_forever(stop_after_iterations=args.iterations or None)
        failed = [s for s in summaries if s.get("status") != RUN_SUCCESS]
        print(json.dumps({"success": not failed, "runs": len(summaries)}, ensure_ascii=True))
        return 1 if failed else 0

    try:
        summary = runtime.run_now(jurisdiction_ids=args.jurisdiction or None)
    except JobLockBusy as exc:
        print(json.dumps({"success": False, "error": exc.message}, ensure_ascii=True))
        return 1
    print(summary["report"])
    print(
        json.dumps(
            {
                "success": summary["status"] == RUN_SUCCESS,
                "run_id": summary["run_id"],
                "status": summary["status"],
                "candidates_found": summary["candidates_found"],
                "relevant_candidates": summary["relevant_candidates"],
                "templates_published": summary["templates_published"],
                "error_message": summary.get("error_message"),
            },
            ensure_ascii=True,
        )
    )
    return 0 if summary["status"] == RUN_SUCCESS else 1


if __name__ == "__main__":
    raise SystemExit(main())
