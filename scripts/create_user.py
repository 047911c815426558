import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from crowdaid.config import resolve_database_path
from crowdaid.database import Database
from crowdaid.errors import CrowdAidError
from crowdaid.models import Role


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Create a CrowdAid user and print its API key")
    parser.add_argument("name", help="Display name for the user")
    parser.add_argument("email", help="Unique email address")
    parser.add_argument(
        "--volunteer",
        action="store_true",
        help="Grant the volunteer role so the user can search for and accept requests",
    )
    parser.add_argument("--phone", dest="phone_number", default=None, help="Contact phone number")
    parser.add_argument("--address", default=None, help="Home address")
    parser.add_argument("--lat", dest="latitude", type=float, default=None, help="Home latitude")
    parser.add_argument("--lng", dest="longitude", type=float, default=None, help="Home longitude")
    parser.add_argument(
        "--db",
        dest="db_path",
        default=None,
        help="Path to the SQLite database (defaults to CROWDAID_DB_PATH or data/crowdaid.sqlite3)",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()

    db_env = args.db_path or os.getenv("CROWDAID_DB_PATH")
    db_path = resolve_database_path(db_env)

    database = Database(db_path)
    database.initialize()

    roles = (Role.USER, Role.VOLUNTEER) if args.volunteer else (Role.USER,)
    try:
        user, api_key = database.create_user(
            args.name,
            args.email,
            roles=roles,
            phone_number=args.phone_number,
            address=args.address,
            latitude=args.latitude,
            longitude=args.longitude,
        )
    except CrowdAidError as exc:  # duplicates, etc.
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1

    kind = "volunteer" if user.is_volunteer else "user"
    print(f"Created {kind} #{user.id}: {user.name} <{user.email}>")
    print(f"API key (shown once): {api_key}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
