"""Reference prediction job.

Usage: predict.py fromDate fromTime toDate toTime username token

Pushes hourly values for [from, to) back to the backend day by day and prints
``done`` on stdout once the whole range is delivered. Diagnostics go to stderr.
"""
import argparse
import itertools
import logging
import os
import sys
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import httpx

logging.basicConfig(level=logging.INFO, stream=sys.stderr)
logger = logging.getLogger("forecast-worker")

BACKEND_INTERNAL_URL = os.getenv("BACKEND_INTERNAL_URL", "http://localhost:8000")
BACKEND_API_KEY = os.getenv("BACKEND_API_KEY")
LABEL_FORMAT = "%Y-%m-%d %H"


def parse_moment(date_str: str, time_str: str) -> datetime:
    """Combine ``YYYY-MM-DD`` and an hour given as ``H``, ``HH`` or ``HH:MM``."""
    day = datetime.strptime(date_str.strip(), "%Y-%m-%d")
    hour = int(time_str.strip().split(":")[0] or 0)
    return day.replace(hour=hour)


def hour_range(start: datetime, end: datetime) -> List[datetime]:
    hours = []
    current = start
    while current < end:
        hours.append(current)
        current += timedelta(hours=1)
    return hours


def estimate(profile: Dict[str, float], moment: datetime) -> float:
    label = moment.strftime(LABEL_FORMAT)
    if label in profile:
        return profile[label]
    if profile:
        return sum(profile.values()) / len(profile)
    return 0.0


def fetch_profile(client: httpx.Client) -> Dict[str, float]:
    r = client.post("/load/predict-data", json={})
    r.raise_for_status()
    return r.json().get("avg", {})


def run(args: argparse.Namespace, client: httpx.Client) -> bool:
    """Push the forecast; returns False when the backend told us to stop."""
    start = parse_moment(args.from_date, args.from_time)
    end = parse_moment(args.to_date, args.to_time)
    profile = fetch_profile(client)
    logger.info("Forecasting %s -> %s for %s (%d profile points)", start, end, args.username, len(profile))

    pushed: List[dict] = []
    batches = [list(g) for _, g in itertools.groupby(hour_range(start, end), key=lambda m: m.date())] or [[]]
    for batch in batches:
        pushed.extend(
            {"dateTime": m.strftime(LABEL_FORMAT), "yhat": estimate(profile, m)} for m in batch
        )
        # The backend replaces the user's series on every push, so send everything so far
        r = client.post(
            "/add/hour-data",
            json={"username": args.username, "token": args.token, "data": pushed},
        )
        r.raise_for_status()
        if r.json().get("message") == "STOP":
            logger.info("Token %s superseded for %s, stopping", args.token, args.username)
            return False
    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Energy forecast job")
    parser.add_argument("from_date")
    parser.add_argument("from_time")
    parser.add_argument("to_date")
    parser.add_argument("to_time")
    parser.add_argument("username")
    parser.add_argument("token")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    headers = {"X-API-Key": BACKEND_API_KEY} if BACKEND_API_KEY else {}
    try:
        with httpx.Client(base_url=BACKEND_INTERNAL_URL, headers=headers, timeout=20.0) as client:
            finished = run(args, client)
    except Exception as e:
        logger.exception("Prediction for %s failed: %s", args.username, e)
        return 1
    if finished:
        print("done", flush=True)
    return 0


if __name__ == "__main__":
    sys.exit(main())
