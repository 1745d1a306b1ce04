"""Print a signed access token for local development.

Usage:
    python -m clinic_backend.issue_token doctor@example.com --role admin
"""
import argparse
import sys

from clinic_backend.auth.identity import ADMIN_ROLE, PATIENT_ROLE
from clinic_backend.auth.jwt_handler import create_access_token
from clinic_backend.core import config


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("email")
    parser.add_argument("--role", choices=[ADMIN_ROLE, PATIENT_ROLE], default=PATIENT_ROLE)
    parser.add_argument("--minutes", type=int, default=None)
    args = parser.parse_args(argv)

    if config.APP_ENV.lower() == "production":
        print("Refusing to issue development tokens in production.", file=sys.stderr)
        sys.exit(1)

    print(create_access_token(args.email.strip().lower(), role=args.role, expires_minutes=args.minutes))


if __name__ == "__main__":
    main()
