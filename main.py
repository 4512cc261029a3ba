import argparse
import logging

from clinicscheduler.config import load_settings
from clinicscheduler.worker import run_forever, run_once


def _setup_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )


def main() -> int:
    parser = argparse.ArgumentParser(description="Clinic appointment reminder scheduler")
    parser.add_argument("--once", action="store_true", help="Run a single reschedule sweep and exit")
    parser.add_argument(
        "--days-ahead",
        type=int,
        default=None,
        help="Lookahead window in days for the reschedule sweep (default: RESCHEDULE_DAYS_AHEAD)",
    )
    args = parser.parse_args()

    _setup_logging()
    settings = load_settings()
    logger = logging.getLogger(__name__)

    try:
        if args.once:
            run_once(settings, days_ahead=args.days_ahead)
            return 0

        run_forever(settings, days_ahead=args.days_ahead)
        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0

    except Exception as e:
        logger.error("Scheduler exited with error (%s: %s)", type(e).__name__, e)
        raise


if __name__ == "__main__":
    raise SystemExit(main())
