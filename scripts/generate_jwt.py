from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

import jwt

ROLES = ("seeker", "referrer", "mentor", "admin", "service")


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate a JWT for the ReferralMe lifecycle API.")
    parser.add_argument("--secret", required=True)
    parser.add_argument("--subject", required=True, help="User id the token acts as.")
    parser.add_argument("--roles", required=True, help=f"Comma-separated roles from {ROLES}.")
    parser.add_argument("--hours", type=int, default=12)
    parser.add_argument("--algorithm", default="HS256")
    args = parser.parse_args()

    roles = [item.strip() for item in args.roles.split(",") if item.strip()]
    unknown = sorted(set(roles) - set(ROLES))
    if unknown:
        parser.error(f"unknown roles: {', '.join(unknown)}")

    payload = {
        "sub": args.subject,
        "roles": roles,
        "exp": datetime.now(timezone.utc) + timedelta(hours=args.hours),
    }
    token = jwt.encode(payload, args.secret, algorithm=args.algorithm)
    print(token)


if __name__ == "__main__":
    main()
