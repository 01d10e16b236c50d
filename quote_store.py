"""
Quote persistence (PostgreSQL / psycopg2).

Child rows (cost items, flight segments) are never merged: every save of an
existing quote deletes them and reinserts the complete current set, inside
the same transaction as the header update.
"""

from typing import Any, Dict, List, Optional
import os
import logging

import psycopg2

from pricing_engine import QuoteNotFoundError

logger = logging.getLogger(__name__)

LIST_LIMIT = 100

DB_CONFIG = {
    'host': os.environ.get('DB_HOST', 'localhost'),
    'port': int(os.environ.get('DB_PORT', 5432)),
    'database': os.environ.get('DB_NAME', 'obc_quoter'),
    'user': os.environ.get('DB_USER', 'postgres'),
    'password': os.environ.get('DB_PASS', ''),
}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS quotes (
    id SERIAL PRIMARY KEY,
    created_at TIMESTAMP NOT NULL DEFAULT NOW(),
    customer_name TEXT NOT NULL,
    customer_company TEXT,
    customer_contact TEXT,
    origin_city TEXT NOT NULL,
    destination_city TEXT NOT NULL,
    pickup_time TIMESTAMP,
    delivery_deadline TIMESTAMP,
    package_description TEXT,
    weight_kg NUMERIC,
    traveler TEXT,
    status TEXT NOT NULL DEFAULT 'draft'
        CHECK (status IN ('draft', 'sent')),
    flight_cost_total NUMERIC DEFAULT 0,
    ground_cost_total NUMERIC DEFAULT 0,
    time_cost_total NUMERIC DEFAULT 0,
    other_cost_total NUMERIC DEFAULT 0,
    total_cost NUMERIC DEFAULT 0,
    margin_type TEXT,
    margin_value NUMERIC,
    margin_amount NUMERIC DEFAULT 0,
    price_to_customer NUMERIC DEFAULT 0,
    currency TEXT DEFAULT 'EUR',
    nights_at_destination INTEGER DEFAULT 0,
    days_out_total INTEGER DEFAULT 1,
    internal_note TEXT
);

CREATE TABLE IF NOT EXISTS cost_items (
    id SERIAL PRIMARY KEY,
    quote_id INTEGER REFERENCES quotes(id) ON DELETE CASCADE,
    description TEXT NOT NULL,
    quantity NUMERIC,
    unit TEXT,
    unit_price NUMERIC,
    line_total NUMERIC,
    category TEXT
);

CREATE TABLE IF NOT EXISTS flight_segments (
    id SERIAL PRIMARY KEY,
    quote_id INTEGER REFERENCES quotes(id) ON DELETE CASCADE,
    from_iata TEXT,
    to_iata TEXT,
    departure TIMESTAMP,
    arrival TIMESTAMP,
    carrier_code TEXT,
    flight_number TEXT,
    price_component NUMERIC
);

CREATE INDEX IF NOT EXISTS idx_quotes_created_at ON quotes(created_at DESC);
CREATE INDEX IF NOT EXISTS idx_cost_items_quote_id ON cost_items(quote_id);
CREATE INDEX IF NOT EXISTS idx_flight_segments_quote_id ON flight_segments(quote_id);
"""

# Header columns written on insert / update, in statement order.
QUOTE_COLUMNS = (
    'customer_name', 'customer_company', 'customer_contact',
    'origin_city', 'destination_city',
    'pickup_time', 'delivery_deadline',
    'package_description', 'weight_kg', 'traveler',
    'status',
    'flight_cost_total', 'ground_cost_total', 'time_cost_total', 'other_cost_total',
    'total_cost',
    'margin_type', 'margin_value', 'margin_amount',
    'price_to_customer', 'currency',
    'nights_at_destination', 'days_out_total',
    'internal_note',
)


def get_db():
    database_url = os.environ.get('DATABASE_URL')
    if database_url:
        if os.environ.get('APP_ENV') == 'production':
            return psycopg2.connect(database_url, sslmode='require')
        return psycopg2.connect(database_url)
    return psycopg2.connect(**DB_CONFIG)


def rows_to_dicts(cursor, rows):
    cols = [d[0] for d in cursor.description]
    return [dict(zip(cols, r)) for r in rows]


def init_schema() -> None:
    db = get_db()
    try:
        cur = db.cursor()
        cur.execute(SCHEMA_SQL)
        db.commit()
        logger.info("Database schema ensured")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# =====================================================
# READ
# =====================================================

def list_quotes(limit: int = LIST_LIMIT) -> List[Dict[str, Any]]:
    db = get_db()
    try:
        cur = db.cursor()
        cur.execute(
            """SELECT id, created_at, customer_name, customer_company,
                      origin_city, destination_city, price_to_customer, currency, status
               FROM quotes
               ORDER BY created_at DESC, id DESC
               LIMIT %s""",
            (min(limit, LIST_LIMIT),)
        )
        return rows_to_dicts(cur, cur.fetchall())
    finally:
        db.close()


def get_quote(quote_id: int) -> Dict[str, Any]:
    """Return {'quote', 'costItems', 'flightSegments'} or raise QuoteNotFoundError."""
    db = get_db()
    try:
        cur = db.cursor()
        cur.execute("SELECT * FROM quotes WHERE id = %s", (quote_id,))
        quote_rows = rows_to_dicts(cur, cur.fetchall())
        if not quote_rows:
            raise QuoteNotFoundError(f"Quote {quote_id} not found")

        cur.execute("SELECT * FROM cost_items WHERE quote_id = %s ORDER BY id", (quote_id,))
        cost_items = rows_to_dicts(cur, cur.fetchall())

        cur.execute("SELECT * FROM flight_segments WHERE quote_id = %s ORDER BY id", (quote_id,))
        flight_segments = rows_to_dicts(cur, cur.fetchall())

        return {
            'quote': quote_rows[0],
            'costItems': cost_items,
            'flightSegments': flight_segments,
        }
    finally:
        db.close()


# =====================================================
# WRITE
# =====================================================

def _insert_children(cur, quote_id, cost_items, flight_segments):
    for item in cost_items:
        cur.execute(
            """INSERT INTO cost_items
               (quote_id, description, quantity, unit, unit_price, line_total, category)
               VALUES (%s, %s, %s, %s, %s, %s, %s)""",
            (quote_id, item['description'], item['quantity'], item.get('unit'),
             item['unit_price'], item['line_total'], item.get('category'))
        )

    for seg in flight_segments:
        cur.execute(
            """INSERT INTO flight_segments
               (quote_id, from_iata, to_iata, departure, arrival,
                carrier_code, flight_number, price_component)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s)""",
            (quote_id, seg.get('from'), seg.get('to'), seg.get('departure'), seg.get('arrival'),
             seg.get('carrierCode'), seg.get('flightNumber'), seg.get('price_component'))
        )


def save_quote(
    quote: Dict[str, Any],
    cost_items: List[Dict[str, Any]],
    flight_segments: List[Dict[str, Any]],
    quote_id: Optional[int] = None
) -> int:
    """
    Create (quote_id is None) or fully replace a quote and its child rows.
    Callers pass the complete current cost items and segments, never a delta.
    Returns the quote id.
    """
    values = [quote.get(col) for col in QUOTE_COLUMNS]

    db = get_db()
    cur = db.cursor()
    try:
        if quote_id is None:
            placeholders = ', '.join(['%s'] * len(QUOTE_COLUMNS))
            cur.execute(
                f"INSERT INTO quotes ({', '.join(QUOTE_COLUMNS)}) VALUES ({placeholders}) RETURNING id",
                values
            )
            quote_id = cur.fetchone()[0]
        else:
            assignments = ', '.join(f"{col} = %s" for col in QUOTE_COLUMNS)
            cur.execute(
                f"UPDATE quotes SET {assignments} WHERE id = %s",
                values + [quote_id]
            )
            if cur.rowcount == 0:
                raise QuoteNotFoundError(f"Quote {quote_id} not found")
            cur.execute("DELETE FROM cost_items WHERE quote_id = %s", (quote_id,))
            cur.execute("DELETE FROM flight_segments WHERE quote_id = %s", (quote_id,))

        _insert_children(cur, quote_id, cost_items, flight_segments)
        db.commit()
        logger.info(
            f"Quote {quote_id} saved: status={quote.get('status')}, "
            f"{len(cost_items)} cost items, {len(flight_segments)} segments"
        )
        return quote_id
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
