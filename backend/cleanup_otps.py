#!/usr/bin/env python3
"""
Delete expired OTP records and anything past the retention period.

Meant to be run by cron, e.g. every 15 minutes:
    */15 * * * * cd /srv/bhishak/backend && python cleanup_otps.py
"""
import argparse
import asyncio
import logging
import sys

from api.dependencies import get_otp_policy
from db.base import initialize_database
from db.session import engine
from services.otp_service import OtpService
from utils.sms import ConsoleSmsAdapter

logger = logging.getLogger("cleanup_otps")


async def run_cleanup(ensure_tables: bool = False) -> int:
    if ensure_tables:
        await initialize_database()
    # Cleanup never sends anything; the adapter is only there to satisfy the constructor
    service = OtpService(sms_adapter=ConsoleSmsAdapter(), policy=get_otp_policy())
    try:
        return await service.cleanup_expired()
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Remove expired OTP records")
    parser.add_argument("--ensure-tables", action="store_true", help="Create tables first (fresh databases)")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s - %(asctime)s - %(name)s - %(message)s",
    )
    deleted = asyncio.run(run_cleanup(ensure_tables=args.ensure_tables))
    logger.info(f"Removed {deleted} OTP records")
    return 0


if __name__ == "__main__":
    sys.exit(main())
