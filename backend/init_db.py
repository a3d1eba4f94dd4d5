#!/usr/bin/env python3
# backend/init_db.py
"""
Create the ledger tables on a scratch database.

This script can be run from any directory:
    python backend/init_db.py
    cd backend && python init_db.py

Production databases are migrated with alembic instead (backend/alembic).
"""
import sys
from pathlib import Path

# Add the backend directory to Python path so 'ledger' package is importable
backend_dir = Path(__file__).parent
sys.path.insert(0, str(backend_dir))

from ledger.database import create_tables


if __name__ == "__main__":
    print("Creating ledger tables...")
    for table in create_tables():
        print(f"  {table}")
    print("Tables created successfully!")
