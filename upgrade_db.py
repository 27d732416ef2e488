# upgrade_db.py: create the schema and apply compatibility migrations
import argparse

import database
from database import apply_compat_migrations, initialize_database


def setup_database(db_path=None):
    """
    Ensures the database is fully created from the schema and then applies
    any upgrades older builds need (missing columns, stored 'overdue' statuses).
    """
    if db_path:
        database.DB_PATH = db_path
    print(f"--- Running Database Setup & Upgrade ({database.DB_PATH}) ---")

    print("Initializing database schema...")
    initialize_database()
    print("✅ Base schema created/verified.")

    print("Applying compatibility migrations...")
    apply_compat_migrations()
    print("✅ Migrations applied.")
    print("--- Setup & Upgrade Complete ---")


if __name__ == "__main__":
    ap = argparse.ArgumentParser(description="Create or upgrade the Lasy Finance database.")
    ap.add_argument("--db", help="path to the SQLite file (defaults to FINANCE_DB or ./finance.db)")
    args = ap.parse_args()
    setup_database(args.db)
