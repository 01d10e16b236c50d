"""Tests for the plaintext quote email."""

from datetime import datetime
from decimal import Decimal

from quote_email import render_quote_email


def test_full_quote():
    email = render_quote_email({
        'customer_name': 'Jordan Smith',
        'origin_city': 'Frankfurt',
        'destination_city': 'Detroit',
        'package_description': 'Engine control unit, 4 kg',
        'pickup_time': '2024-03-01T06:30:00Z',
        'delivery_deadline': datetime(2024, 3, 2, 12, 0),
        'price_to_customer': Decimal('2345.678'),
        'currency': 'USD',
    })

    assert email.startswith('Dear Jordan Smith,')
    assert 'Route: Frankfurt -> Detroit' in email
    assert 'Shipment: Engine control unit, 4 kg' in email
    assert 'Pickup: 2024-03-01 06:30' in email
    assert 'Delivery deadline: 2024-03-02 12:00' in email
    assert 'Price: 2,345.68 USD' in email


def test_missing_fields_fall_back():
    email = render_quote_email({'customer_name': 'Acme', 'origin_city': 'A', 'destination_city': 'B'})

    assert 'Shipment:' not in email
    assert 'Pickup: to be confirmed' in email
    assert 'Delivery deadline: to be confirmed' in email
    assert 'Price: 0.00 EUR' in email


def test_unparseable_timestamp_is_shown_verbatim():
    email = render_quote_email({'customer_name': 'Acme', 'pickup_time': 'ASAP'})
    assert 'Pickup: ASAP' in email


def test_negative_price_is_rendered():
    email = render_quote_email({'customer_name': 'Acme', 'price_to_customer': -50})
    assert 'Price: -50.00 EUR' in email
