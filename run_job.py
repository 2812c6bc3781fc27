"""Run one bot job once, for cron or manual invocation."""
from __future__ import annotations

import argparse
from dataclasses import replace
import json
import sys
from pathlib import Path

from obtrader.config import BotConfig
from obtrader.jobs import JOBS, run_job
from obtrader.logging_utils import configure_logging
from obtrader.services import build_services


def main() -> int:
    parser = argparse.ArgumentParser(description="Run an order block bot job.")
    parser.add_argument("job", choices=sorted(JOBS), help="Job to run.")
    parser.add_argument(
        "--data-dir",
        type=Path,
        help="Override DATA_DIR for the store and logs.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level (default INFO).",
    )
    args = parser.parse_args()

    config = BotConfig.from_env()
    if args.data_dir is not None:
        config = replace(config, data_dir=args.data_dir)
    services = build_services(config)
    configure_logging(services.config.data_dir, args.log_level)

    outcome = run_job(args.job, services, JOBS[args.job])
    print(json.dumps(outcome.to_dict(), indent=2, default=str))
    return 0 if outcome.success else 1


if __name__ == "__main__":
    sys.exit(main())
