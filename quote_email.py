"""Plaintext email draft for a priced quote."""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict

from pricing_engine import to_decimal, DEFAULT_CURRENCY

TO_BE_CONFIRMED = 'to be confirmed'

EMAIL_TEMPLATE = """Dear {customer_name},

Thank you for your request. Please find our on-board courier quotation below.

Route: {origin_city} -> {destination_city}
{package_line}Pickup: {pickup_time}
Delivery deadline: {delivery_deadline}

Price: {price} {currency}

A dedicated courier will personally carry your shipment as accompanied
baggage on a commercial flight. Please confirm at your earliest convenience
so we can secure the flights.

Kind regards,
OBC Operations
"""


def _format_timestamp(value: Any) -> str:
    if not value:
        return TO_BE_CONFIRMED
    if isinstance(value, datetime):
        return value.strftime('%Y-%m-%d %H:%M')
    try:
        return datetime.fromisoformat(str(value).replace('Z', '+00:00')).strftime('%Y-%m-%d %H:%M')
    except ValueError:
        return str(value)


def _format_price(value: Any) -> str:
    amount = to_decimal(value).quantize(Decimal('0.01'), ROUND_HALF_UP)
    return f"{amount:,.2f}"


def render_quote_email(quote: Dict[str, Any]) -> str:
    description = (quote.get('package_description') or '').strip()
    package_line = f"Shipment: {description}\n" if description else ''

    return EMAIL_TEMPLATE.format(
        customer_name=(quote.get('customer_name') or 'Customer').strip(),
        origin_city=quote.get('origin_city') or '?',
        destination_city=quote.get('destination_city') or '?',
        package_line=package_line,
        pickup_time=_format_timestamp(quote.get('pickup_time')),
        delivery_deadline=_format_timestamp(quote.get('delivery_deadline')),
        price=_format_price(quote.get('price_to_customer')),
        currency=quote.get('currency') or DEFAULT_CURRENCY,
    )
