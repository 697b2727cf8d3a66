#!/usr/bin/env python3
import sys
import os
import argparse

# Add parent directory to path to import modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from datamocker.api_key_manager import CredentialStore
from datamocker.counter_store import SqlCounterStore
from datamocker.database import SessionLocal, engine
from datamocker.models import Base

def main():
    parser = argparse.ArgumentParser(description="Issue API keys for the Mock Data API")
    parser.add_argument("--account", type=str, required=True, help="Account id the keys belong to")
    parser.add_argument("--label", type=str, default="cli", help="Label for the new keys")
    parser.add_argument("--count", type=int, default=1, help="Number of API keys to issue")
    parser.add_argument("--output", type=str, help="Output file to save issued keys")
    parser.add_argument(
        "--purge-expired", action="store_true", help="Delete expired keys and quota counters before issuing"
    )
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)

    if args.purge_expired:
        removed = SqlCounterStore(SessionLocal).purge_expired()
        print(f"Removed {removed} expired quota counters")

    db = SessionLocal()
    try:
        store = CredentialStore(db)
        if args.purge_expired:
            removed = store.purge_expired()
            print(f"Removed {removed} expired keys")

        print(f"Issuing {args.count} API keys for {args.account}...")
        issued = [
            store.issue(args.account, args.label if args.count == 1 else f"{args.label}-{i + 1}")
            for i in range(args.count)
        ]
    finally:
        db.close()

    # Secrets are shown once; only hashes are stored
    if args.output:
        with open(args.output, "w") as f:
            for key in issued:
                f.write(f"{key.secret}\n")
        print(f"Saved keys to {args.output}")
    else:
        print("API Keys:")
        for key in issued:
            print(f"{key.secret}  (id={key.credential_id}, expires {key.expires_at:%Y-%m-%d})")

if __name__ == "__main__":
    main()
