"""
Issue a development bearer token for the dashboard API.
In deployment the identity provider issues these; run this only against a
development database:
    python issue_token.py --user-id 42 --role 3
"""
import argparse
from datetime import datetime, timedelta, timezone

import jwt

from config import Config

config = Config()


def issue_token(user_id, role, hours=8):
    now = datetime.now(timezone.utc)
    payload = {
        'sub': str(user_id),
        'user': {'id': user_id, 'role': role},
        'iat': now,
        'exp': now + timedelta(hours=hours),
    }
    return jwt.encode(payload, config.AUTH_SECRET, algorithm=config.AUTH_ALGORITHM)


def main(argv=None):
    parser = argparse.ArgumentParser(description='Issue a development bearer token.')
    parser.add_argument('--user-id', type=int, required=True)
    parser.add_argument('--role', type=int, required=True, help='application role id (admins: %s)' % ','.join(
        str(r) for r in sorted(config.ADMIN_ROLE_IDS)))
    parser.add_argument('--hours', type=int, default=8)
    args = parser.parse_args(argv)

    if config.IS_PRODUCTION:
        print("Error: tokens must come from the identity provider in production.")
        return 1

    print(issue_token(args.user_id, args.role, args.hours))
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
