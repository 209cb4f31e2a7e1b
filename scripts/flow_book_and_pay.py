#!/usr/bin/env python3
"""
Booking and payment flow script against a running API.

DO NOT ADD BUSINESS LOGIC HERE.
This script only orchestrates API calls.
All rules live in the backend.

Usage:
    python scripts/flow_book_and_pay.py --listing-id <UUID> --sitter-id <UUID> --host-id <UUID> \
        --start 2026-04-01 --end 2026-04-04 [--points 2] [--cancel]

Tokens are minted locally with the API's JWT secret, so the script must run
with the same environment (.env) as the server.

Flow:
    1. Quote fees
    2. Create booking (as sitter)
    3. Accept booking (as host)
    4. Pay with points / manual completion (as sitter)
    5. Confirm booking (as host)
    6. Optionally cancel (as sitter), refunding points
"""

import argparse
import json
import sys

import httpx

from sitswap.core.security import create_access_token

BASE_URL = "http://localhost:8000"


def token_for(profile_id: str) -> str:
    return create_access_token({"sub": profile_id})


def api_request(token: str | None, method: str, endpoint: str, data: dict | None = None) -> dict:
    """Make authenticated API request."""
    headers = {"Authorization": f"Bearer {token}"} if token else {}
    url = f"{BASE_URL}{endpoint}"

    if method == "GET":
        response = httpx.get(url, headers=headers, timeout=10.0, follow_redirects=True)
    elif method == "POST":
        response = httpx.post(url, headers=headers, json=data or {}, timeout=10.0, follow_redirects=True)
    else:
        raise ValueError(f"Unknown method: {method}")

    return {"status": response.status_code, "data": response.json() if response.text else {}}


def print_step(step: int, title: str):
    """Print step header."""
    print(f"\n{'='*60}")
    print(f"STEP {step}: {title}")
    print("="*60)


def print_result(result: dict, fields: list[str] | None = None):
    """Print result, optionally filtering fields."""
    if result["status"] >= 400:
        print(f"ERROR ({result['status']}): {json.dumps(result['data'], indent=2)}")
        return False

    print(f"Status: {result['status']}")
    if fields and isinstance(result["data"], dict):
        filtered = {k: result["data"].get(k) for k in fields if k in result["data"]}
        print(json.dumps(filtered, indent=2))
    else:
        print(json.dumps(result["data"], indent=2))
    return True


def main():
    parser = argparse.ArgumentParser(description="Booking and payment flow")
    parser.add_argument("--listing-id", required=True, help="Listing UUID")
    parser.add_argument("--sitter-id", required=True, help="Sitter profile UUID")
    parser.add_argument("--host-id", required=True, help="Host profile UUID (listing owner)")
    parser.add_argument("--start", required=True, help="Start date (YYYY-MM-DD)")
    parser.add_argument("--end", required=True, help="End date (YYYY-MM-DD)")
    parser.add_argument("--points", type=int, default=0, help="Points to spend on the fees")
    parser.add_argument("--cancel", action="store_true", help="Cancel the sit at the end")
    args = parser.parse_args()

    sitter_token = token_for(args.sitter_id)
    host_token = token_for(args.host_id)

    # Step 1: Quote
    print_step(1, "Quote fees")
    quote = api_request(None, "POST", "/api/v1/bookings/quote", {"start_date": args.start, "end_date": args.end})
    if not print_result(quote):
        sys.exit(1)

    # Step 2: Create booking
    print_step(2, "Create booking (as sitter)")
    created = api_request(sitter_token, "POST", "/api/v1/bookings", {
        "listing_id": args.listing_id,
        "start_date": args.start,
        "end_date": args.end,
    })
    if not print_result(created, ["id", "status", "payment_status", "total_fee", "cash_due"]):
        sys.exit(1)
    booking_id = created["data"]["id"]

    # Step 3: Accept
    print_step(3, "Accept booking (as host)")
    accepted = api_request(host_token, "POST", f"/api/v1/bookings/{booking_id}/accept")
    if not print_result(accepted, ["id", "status", "payment_status"]):
        sys.exit(1)

    # Step 4: Pay
    print_step(4, "Complete payment (as sitter)")
    balance = api_request(sitter_token, "GET", "/api/v1/points/balance")
    print_result(balance)
    paid = api_request(sitter_token, "POST", f"/api/v1/payments/bookings/{booking_id}/complete", {
        "requested_points": args.points,
    })
    if not print_result(paid):
        sys.exit(1)

    # Step 5: Confirm
    print_step(5, "Confirm booking (as host)")
    confirmed = api_request(host_token, "POST", f"/api/v1/bookings/{booking_id}/confirm")
    if not print_result(confirmed, ["id", "status", "payment_status", "points_applied", "cash_due"]):
        sys.exit(1)

    if args.cancel:
        print_step(6, "Cancel booking (as sitter)")
        cancelled = api_request(sitter_token, "POST", f"/api/v1/bookings/{booking_id}/cancel", {
            "reason": "Change of plans",
        })
        if not print_result(cancelled, ["id", "status", "payment_status", "cancellation_reason"]):
            sys.exit(1)
        print_result(api_request(sitter_token, "GET", "/api/v1/points/ledger"))

    print("\n" + "="*60)
    print("FLOW COMPLETE")
    print("="*60)
    print(f"Booking: {booking_id}")


if __name__ == "__main__":
    main()
