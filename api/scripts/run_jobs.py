import argparse
import json
import logging
import sys
import time
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from meetup import jobs

JOBS = {
    "offers": jobs.expire_stale_offers,
    "presence": jobs.cleanup_expired_presence,
    "stale-pending": jobs.cleanup_stale_pending_matches,
    "location": jobs.resolve_expired_location_decisions,
    "confirmations": jobs.cleanup_expired_confirmations,
    "idempotency": jobs.cleanup_idempotency_records,
}


def main() -> None:
    parser = argparse.ArgumentParser(description="Run meetup reconciliation sweeps")
    parser.add_argument("--job", choices=sorted(JOBS), default=None, help="run a single sweep instead of all")
    parser.add_argument("--loop", type=int, default=0, help="repeat every N seconds")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    while True:
        if args.job:
            report = {args.job: JOBS[args.job]()}
        else:
            report = jobs.run_all_jobs()
        print(json.dumps(report))
        if not args.loop:
            break
        time.sleep(args.loop)


if __name__ == "__main__":
    main()
