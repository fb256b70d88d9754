import argparse
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from meetup.database import SessionLocal, init_db
from meetup.services.seeding import seed_demo_users, seed_places


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed meetup places and demo users")
    parser.add_argument("--n-places", type=int, default=60)
    parser.add_argument("--n-users", type=int, default=10)
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--reset", action="store_true")
    parser.add_argument("--password", type=str, default="meetup123")
    args = parser.parse_args()

    init_db()
    with SessionLocal() as db:
        summary = seed_places(db, n_places=args.n_places, seed=args.seed, reset=args.reset)
        summary.update(seed_demo_users(db, n_users=args.n_users, seed=args.seed, password=args.password))

    print("Seed completed")
    for k, v in summary.items():
        print(f"- {k}: {v}")


if __name__ == "__main__":
    main()
