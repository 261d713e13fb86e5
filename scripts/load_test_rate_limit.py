#!/usr/bin/env python3
"""Load test script: shows the per-IP limit and the per-account lockout.

RUN:  python scripts/load_test_rate_limit.py [--base-url URL] [--requests N]

Phase 1 fires N wrong-password logins for the seed account as fast as
possible and counts outcomes.  With the default policy (10 burst, 1/s)
you should see a handful of "invalid password" replies, then the
lockout kicks in after 5 failures, and the IP bucket runs dry shortly
after.

Phase 2 fires N task creations with a logged-in session and counts
201 vs 429.

Prerequisites:
  - The API must be running: uvicorn abuse_guard.main:app --port 8000
  - Run it twice against Redis-backed instances on different ports to
    see that the buckets are shared.
"""

from __future__ import annotations

import argparse
import time
import uuid
from collections import Counter

import httpx

SEED_EMAIL = "test@example.com"


def _classify_login(resp: httpx.Response) -> str:
    body = resp.text
    if "Too many login attempts" in body:
        return "locked_out_or_throttled"
    if "Invalid username or password" in body:
        return "invalid_password"
    return f"status_{resp.status_code}"


def hammer_login(client: httpx.Client, total: int) -> Counter[str]:
    outcomes: Counter[str] = Counter()
    for _ in range(total):
        resp = client.post("/api/login", data={"email": SEED_EMAIL, "password": "wrong"})
        outcomes[_classify_login(resp)] += 1
        if resp.headers.get("x-ratelimit-error"):
            outcomes["fail_open"] += 1
    return outcomes


def hammer_tasks(client: httpx.Client, total: int) -> Counter[int]:
    # The seed account is locked out by now; use a throwaway one.
    email = f"load-{uuid.uuid4().hex[:12]}@example.com"
    password = "load-test-password"
    client.post("/api/signup", data={"email": email, "password": password})
    # Phase 1 drained this IP's login bucket; wait for one token.
    time.sleep(1.5)
    resp = client.post("/api/login", data={"email": email, "password": password})
    if "session" not in client.cookies:
        print(f"Could not log in (status {resp.status_code}); skipping task phase")
        return Counter()

    statuses: Counter[int] = Counter()
    for i in range(total):
        resp = client.post("/api/tasks", json={"title": f"load test {i}"})
        statuses[resp.status_code] += 1
    return statuses


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--requests", type=int, default=100)
    args = parser.parse_args()

    print("Rate Limit Load Test")
    print("=" * 50)
    print(f"Target: {args.base_url}")
    print()

    start = time.monotonic()
    with httpx.Client(base_url=args.base_url, timeout=10) as client:
        login_outcomes = hammer_login(client, args.requests)
    print(f"Login phase ({time.monotonic() - start:.2f}s):")
    for outcome, count in sorted(login_outcomes.items()):
        print(f"  {outcome:<26} {count:>4}")
    print()

    start = time.monotonic()
    with httpx.Client(base_url=args.base_url, timeout=10) as client:
        task_statuses = hammer_tasks(client, args.requests)
    print(f"Task phase ({time.monotonic() - start:.2f}s):")
    for code, count in sorted(task_statuses.items()):
        print(f"  HTTP {code}: {count:>4}")

    if task_statuses and task_statuses.get(429, 0) == 0:
        print()
        print("WARNING: No task requests were throttled.")
        print("Either --requests is below the bucket capacity (60) or limiting is off.")


if __name__ == "__main__":
    main()
