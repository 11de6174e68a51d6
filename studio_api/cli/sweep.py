import argparse
import json
import logging
import os

from dotenv import load_dotenv

load_dotenv()

from studio_api.database.connection import SessionLocal, database_retry
from studio_api.services.housekeeping_service import HousekeepingService

logger = logging.getLogger(__name__)


@database_retry(max_retries=2)
def run_sweep() -> dict:
    session = SessionLocal()
    try:
        return HousekeepingService(session).run()
    finally:
        session.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="studio-sweep",
        description="Advance course statuses and mark no-shows absent.",
    )
    parser.add_argument("--quiet", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    result = run_sweep()
    if not args.quiet:
        print(json.dumps(result, indent=2))


if __name__ == "__main__":
    main()
