"""
Migration: create quotes, cost_items and flight_segments tables
Run once: python migrate_quotes.py
"""
from dotenv import load_dotenv

load_dotenv()

from quote_store import init_schema


if __name__ == '__main__':
    init_schema()
    print("✅ quotes / cost_items / flight_segments tables ensured.")
