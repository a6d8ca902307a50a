#!/usr/bin/env python3
"""
BoxOffice load client.

Many buyers race for the tiers of one published event through MockPay:

    inventory -> checkout -> emit (succeeded|failed) -> poll the order

Afterwards the event inventory is read again and compared with what the
buyers saw: every paid ticket must be sold, and no tier may sell past its
capacity.

    python -m boxoffice.load_client --event <event_id> --total 200 \
        --concurrency 50 --fail-rate 0.1
"""
import argparse
import asyncio
import random
import statistics
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

RESOLVED = ("paid", "failed")


@dataclass
class Attempt:
    tier_id: str
    # paid / failed / sold_out / timeout / error
    outcome: str = "error"
    seconds: float = 0.0
    err: Optional[str] = None


@dataclass
class Tally:
    attempts: List[Attempt] = field(default_factory=list)

    def by_outcome(self) -> Counter:
        return Counter(a.outcome for a in self.attempts)

    def paid_per_tier(self) -> Counter:
        return Counter(a.tier_id for a in self.attempts
                       if a.outcome == "paid")

    def report(self, elapsed: float, inventory: List[Dict]) -> bool:
        counts = self.by_outcome()
        print("\n=== BoxOffice load ===")
        print("  ".join(f"{k}: {counts.get(k, 0)}" for k in
                        ("paid", "failed", "sold_out", "timeout", "error")))
        lat = [a.seconds for a in self.attempts if a.outcome in RESOLVED]
        if len(lat) >= 2:
            q = statistics.quantiles(lat, n=100)
            print(f"resolved in: mean {statistics.mean(lat):.3f}s  "
                  f"p50 {q[49]:.3f}s  p90 {q[89]:.3f}s  p99 {q[98]:.3f}s")
        print(f"{len(self.attempts)} orders in {elapsed:.2f}s "
              f"({len(self.attempts) / elapsed:.1f}/s)")

        ok = True
        paid = self.paid_per_tier()
        for tier in inventory:
            cap = tier.get("capacity")
            line = (f"  {tier['name']:<16} sold {tier['sold']:>6}  "
                    f"paid here {paid.get(tier['tier_id'], 0):>6}  "
                    f"capacity {cap if cap is not None else '-'}")
            if cap is not None and tier["sold"] > cap:
                line += "  OVERSOLD"
                ok = False
            print(line)
        for a in self.attempts:
            if a.err:
                print(f"  error on {a.tier_id}: {a.err}")
                break
        return ok


async def buy_one(
    client: httpx.AsyncClient,
    event_id: str,
    tier_id: str,
    outcome: str,
    poll_interval: float,
    poll_timeout: float,
) -> Attempt:
    attempt = Attempt(tier_id=tier_id)
    try:
        resp = await client.post("/api/checkout", json={
            "event_id": event_id,
            "items": [{"tier_id": tier_id, "quantity": 1}],
            "buyer_email": f"load-{uuid.uuid4().hex[:12]}@example.com",
        })
        if resp.status_code == 409 and \
                resp.json().get("error") == "sold_out":
            attempt.outcome = "sold_out"
            return attempt
        resp.raise_for_status()
        order = resp.json()
        psid = order["payment_session_id"]

        started = time.perf_counter()
        resp = await client.post(f"/mockpay/{psid}/emit",
                                 data={"t": outcome})
        resp.raise_for_status()

        status = "pending"
        deadline = started + poll_timeout
        while time.perf_counter() < deadline:
            r = await client.get(f"/api/orders/{order['order_id']}")
            if r.status_code == 200:
                status = r.json()["status"]
                if status in RESOLVED:
                    break
            await asyncio.sleep(poll_interval)
        attempt.seconds = time.perf_counter() - started
        attempt.outcome = status if status in RESOLVED else "timeout"
    except (httpx.HTTPError, KeyError, ValueError) as e:
        attempt.err = f"{type(e).__name__}: {e}"
    return attempt


async def run_load(
    base: str,
    event_id: str,
    total: int,
    concurrency: int,
    fail_rate: float,
    poll_interval: float,
    poll_timeout: float,
) -> bool:
    gate = asyncio.Semaphore(concurrency)
    tally = Tally()
    limits = httpx.Limits(max_connections=concurrency,
                          max_keepalive_connections=concurrency)
    async with httpx.AsyncClient(base_url=base, limits=limits,
                                 timeout=30.0) as client:
        inv = await client.get(f"/api/events/{event_id}/inventory")
        inv.raise_for_status()
        tier_ids = [t["tier_id"] for t in inv.json()["tiers"]]
        if not tier_ids:
            raise SystemExit(f"event {event_id} has no tiers on sale")

        async def buyer():
            async with gate:
                outcome = "failed" if random.random() < fail_rate \
                    else "succeeded"
                tally.attempts.append(await buy_one(
                    client, event_id, random.choice(tier_ids), outcome,
                    poll_interval, poll_timeout,
                ))

        started = time.perf_counter()
        await asyncio.gather(*(buyer() for _ in range(total)))
        elapsed = time.perf_counter() - started

        inv = await client.get(f"/api/events/{event_id}/inventory")
        inv.raise_for_status()
    return tally.report(elapsed, inv.json()["tiers"])


def main():
    ap = argparse.ArgumentParser(description="BoxOffice load client")
    ap.add_argument("--base", default="http://localhost:8000")
    ap.add_argument("--event", required=True,
                    help="published event to buy tickets for")
    ap.add_argument("--total", type=int, default=100)
    ap.add_argument("--concurrency", type=int, default=20)
    ap.add_argument("--fail-rate", type=float, default=0.0,
                    help="share of payments the buyer abandons")
    ap.add_argument("--poll-interval", type=float, default=0.05)
    ap.add_argument("--poll-timeout", type=float, default=10.0)
    args = ap.parse_args()

    ok = asyncio.run(run_load(
        args.base, args.event, args.total, args.concurrency,
        args.fail_rate, args.poll_interval, args.poll_timeout,
    ))
    raise SystemExit(0 if ok else 1)


if __name__ == "__main__":
    main()
