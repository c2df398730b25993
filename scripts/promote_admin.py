"""
Make an existing account an active admin on the local backend.

    python scripts/promote_admin.py someone@example.edu

The account must have signed in once so its profile row exists. On the
hosted backend set role/status on the profiles table from the dashboard.
"""

import sys

from securenotes.config import BACKEND_LOCAL, Settings
from securenotes.domain import NotFound
from securenotes.services import Storage


def main(argv):
    if len(argv) != 2:
        print("usage: promote_admin.py EMAIL")
        return 2
    settings = Settings()
    if settings.backend != BACKEND_LOCAL:
        print("Only the local backend can be bootstrapped with this script.")
        return 1
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    try:
        account = Storage(settings.notes_db).promote_by_email(argv[1])
    except NotFound:
        print(f"No profile for {argv[1]}. Sign in once, then run this again.")
        return 1
    print(f"{account.email} is now an active {account.role}.")
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv))
