from __future__ import annotations

import argparse
from uuid import uuid4

from trustplane.domain.policies import ROLE_ORDER
from trustplane.services.auth.operator_tokens import issue_operator_token


def main() -> None:
    # Dev-only: production operator tokens come from the external identity service.
    parser = argparse.ArgumentParser(description="Issue a dev HS256 operator token")
    parser.add_argument("--org", required=True, help="Organization id carried in the orgId claim")
    parser.add_argument("--role", required=True, choices=sorted(ROLE_ORDER, key=ROLE_ORDER.get))
    parser.add_argument("--sub", default=None, help="Subject id; random when omitted")
    parser.add_argument("--email", default=None)
    parser.add_argument("--ttl", type=int, default=3600, help="Lifetime in seconds")
    args = parser.parse_args()

    token = issue_operator_token(
        sub=args.sub or uuid4().hex,
        org_id=args.org,
        role=args.role,
        email=args.email,
        expires_in_s=args.ttl,
    )
    print(token)


if __name__ == "__main__":
    main()
