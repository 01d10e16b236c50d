"""
OBC Quote Pricing Engine
========================
Core calculation logic for on-board-courier quotes:
  - Trip duration facts (nights at destination / days out) from a flight offer
  - Cost line normalization + ground / other aggregation
  - Margin application (percent or fixed)
  - Quote totals recomputation (single entry point)
  - Category-prefilled cost lines for the quote wizard
  - Flight segment flattening for persistence
  - Quote status resolution (draft / sent)

This is the SINGLE SOURCE OF TRUTH for quote totals.
Routes, the store and the frontend MUST call QuoteTotalsEngine.recompute()
and never add up totals themselves.

All money math is Decimal. Non-numeric input is coerced to zero at the
boundary (to_decimal) so the engine itself never raises on bad numbers.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Any, Optional
import math
import logging

logger = logging.getLogger(__name__)


# =====================================================
# EXCEPTIONS
# =====================================================

class PricingEngineError(Exception):
    """Base exception for quote pricing errors"""
    pass

class InvalidConfigurationError(PricingEngineError):
    pass

class QuoteNotFoundError(PricingEngineError):
    pass


# =====================================================
# CONSTANTS / POLICY TABLES
# =====================================================

ZERO = Decimal('0')

QUOTE_STATUSES = ('draft', 'sent')
MARGIN_TYPES = ('percent', 'fixed')

DEFAULT_MARGIN_TYPE = 'percent'
DEFAULT_MARGIN_VALUE = Decimal('30')
DEFAULT_CURRENCY = 'EUR'

COST_CATEGORIES = ('ground', 'hotel', 'meals', 'per_diem', 'other')

# Inputs at or above 1e16 coerce to 0; quantity * price then stays finite.
MAX_DECIMAL_EXPONENT = 15

# Bucket membership is data, not conditionals. Bump the version whenever a
# category moves between buckets so stored quotes can be traced to a policy.
COST_BUCKET_POLICY_VERSION = 1
COST_BUCKET_POLICY = {
    'ground': 'ground',
    'hotel': 'other',
    'meals': 'other',
    'per_diem': 'other',
    'other': 'other',
}

# category -> (duration fact used as prefilled quantity, unit, description)
COST_LINE_DEFAULTS = {
    'ground': (None, 'item', 'Ground transport'),
    'hotel': ('nights_at_destination', 'night', 'Hotel'),
    'meals': ('days_out_total', 'day', 'Meals'),
    'per_diem': ('days_out_total', 'day', 'Per diem'),
    'other': (None, 'item', 'Other cost'),
}


# =====================================================
# BOUNDARY COERCION
# =====================================================

def to_decimal(value: Any) -> Decimal:
    """
    Convert a loosely-typed input value to Decimal.
    None, blanks, booleans, NaN/Infinity, out-of-range magnitudes and
    anything non-numeric become 0.
    """
    if value is None or isinstance(value, bool):
        return ZERO
    if isinstance(value, Decimal):
        result = value
    else:
        text = str(value).strip()
        if not text:
            return ZERO
        try:
            result = Decimal(text)
        except (InvalidOperation, ValueError):
            return ZERO
    if not result.is_finite():
        return ZERO
    if not result.is_zero() and result.adjusted() > MAX_DECIMAL_EXPONENT:
        logger.warning(f"Numeric input out of range, coerced to 0: {result}")
        return ZERO
    return result


def bucket_for(category: Optional[str]) -> str:
    """Map a cost category to its bucket. Unknown categories land in 'other'."""
    key = str(category or '').strip().lower()
    return COST_BUCKET_POLICY.get(key, 'other')


# =====================================================
# TRIP DURATION DERIVER
# =====================================================

def _parse_timestamp(value: Any) -> datetime:
    text = str(value).strip()
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    return datetime.fromisoformat(text)


class TripDurationCalculator:
    """
    Derives nights-at-destination and days-out from a selected flight offer.

    Nights are counted on calendar dates (hotel billing unit), days out on
    elapsed hours rounded up (per-diem billing unit). Both come from the
    same timestamps on purpose.
    """

    DEFAULT_FACTS = {'nights_at_destination': 0, 'days_out_total': 1}

    @staticmethod
    def derive(offer: Optional[Dict[str, Any]]) -> Dict[str, int]:
        """
        Compute duration facts for an offer.

        Args:
            offer: FlightOffer dict with 'itineraries' -> 'segments' ->
                   'departure' / 'arrival' ISO timestamps

        Returns:
            Dict with nights_at_destination (>= 0) and days_out_total (>= 1).
            One-way or malformed offers return the safe defaults {0, 1}.
        """
        try:
            itineraries = (offer or {}).get('itineraries') or []
            if len(itineraries) < 2:
                return dict(TripDurationCalculator.DEFAULT_FACTS)

            outbound = itineraries[0]['segments']
            inbound = itineraries[-1]['segments']

            depart_home = _parse_timestamp(outbound[0]['departure'])
            arrive_dest = _parse_timestamp(outbound[-1]['arrival'])
            arrive_home = _parse_timestamp(inbound[-1]['arrival'])

            nights = (arrive_home.date() - arrive_dest.date()).days
            elapsed_hours = (arrive_home - depart_home).total_seconds() / 3600
            days_out = math.ceil(elapsed_hours / 24)
        except (KeyError, IndexError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Duration facts defaulted, unusable offer data: {e}")
            return dict(TripDurationCalculator.DEFAULT_FACTS)

        return {
            'nights_at_destination': max(0, nights),
            'days_out_total': max(1, days_out),
        }


# =====================================================
# COST AGGREGATOR
# =====================================================

class CostAggregator:
    """
    Splits cost lines into the ground bucket and everything else.
    Line totals are always recomputed; a stored line_total is never trusted.
    """

    @staticmethod
    def normalize_item(raw: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        raw = raw or {}
        quantity = to_decimal(raw.get('quantity'))
        unit_price = to_decimal(raw.get('unit_price'))
        category = str(raw.get('category') or 'other').strip().lower()
        return {
            'description': str(raw.get('description') or ''),
            'quantity': quantity,
            'unit': raw.get('unit'),
            'unit_price': unit_price,
            'line_total': quantity * unit_price,
            'category': category,
        }

    @staticmethod
    def aggregate(items: Optional[List[Dict[str, Any]]]) -> Dict[str, Decimal]:
        ground_total = ZERO
        other_total = ZERO

        for raw in (items or []):
            item = CostAggregator.normalize_item(raw)
            if bucket_for(item['category']) == 'ground':
                ground_total += item['line_total']
            else:
                other_total += item['line_total']

        return {
            'ground_cost_total': ground_total,
            'other_cost_total': other_total,
        }


# =====================================================
# MARGIN CALCULATOR
# =====================================================

def parse_margin_policy(margin_type: Any = None, margin_value: Any = None) -> Dict[str, Any]:
    """
    Build a margin policy from request fields.
    Missing type means percent. Negative values are allowed (quoting below cost).
    """
    policy_type = str(margin_type or DEFAULT_MARGIN_TYPE).strip().lower()
    if policy_type not in MARGIN_TYPES:
        raise InvalidConfigurationError(
            f"Unknown margin type '{margin_type}' (expected one of: {', '.join(MARGIN_TYPES)})"
        )
    return {'type': policy_type, 'value': to_decimal(margin_value)}


class MarginCalculator:
    """Applies a percent or fixed margin on top of total cost. No clamping."""

    @staticmethod
    def apply(total_cost: Decimal, policy: Dict[str, Any]) -> Dict[str, Decimal]:
        """
        Raises InvalidConfigurationError for a policy type other than
        'percent' or 'fixed' (case-insensitive).
        """
        total_cost = to_decimal(total_cost)
        value = to_decimal(policy.get('value'))
        policy_type = str(policy.get('type') or '').strip().lower()

        if policy_type == 'fixed':
            margin_amount = value
        elif policy_type == 'percent':
            margin_amount = total_cost * value / 100
        else:
            raise InvalidConfigurationError(
                f"Unknown margin type '{policy.get('type')}' (expected one of: {', '.join(MARGIN_TYPES)})"
            )

        return {
            'margin_amount': margin_amount,
            'price_to_customer': total_cost + margin_amount,
        }


# =====================================================
# QUOTE TOTALS ORCHESTRATOR
# =====================================================

class QuoteTotalsEngine:
    """
    Single recomputation entry point for quote totals.
    Call after every change to cost lines, flight cost, time cost or margin;
    it always rebuilds the full snapshot from its inputs.
    """

    @staticmethod
    def recompute(
        items: Optional[List[Dict[str, Any]]],
        flight_cost_total: Any,
        time_cost_total: Any,
        margin_policy: Dict[str, Any]
    ) -> Dict[str, Decimal]:
        """
        Args:
            items: cost lines (quantity, unit_price, category, ...)
            flight_cost_total: selected offer price
            time_cost_total: courier time cost, edited directly by the operator
            margin_policy: {'type': 'percent' | 'fixed', 'value': number}

        Returns:
            Full QuoteTotals snapshot.
        """
        buckets = CostAggregator.aggregate(items)
        flight_cost = to_decimal(flight_cost_total)
        time_cost = to_decimal(time_cost_total)

        total_cost = (
            flight_cost +
            time_cost +
            buckets['ground_cost_total'] +
            buckets['other_cost_total']
        )
        margin = MarginCalculator.apply(total_cost, margin_policy)

        return {
            'flight_cost_total': flight_cost,
            'time_cost_total': time_cost,
            'ground_cost_total': buckets['ground_cost_total'],
            'other_cost_total': buckets['other_cost_total'],
            'total_cost': total_cost,
            'margin_amount': margin['margin_amount'],
            'price_to_customer': margin['price_to_customer'],
        }


def totals_to_json(totals: Dict[str, Decimal]) -> Dict[str, float]:
    return {key: float(value) for key, value in totals.items()}


# =====================================================
# COST LINE DEFAULTS
# =====================================================

def new_cost_item(category: Optional[str], duration_facts: Optional[Dict[str, int]] = None) -> Dict[str, Any]:
    """
    Fresh cost line for the given category, quantity prefilled from the
    trip duration facts (hotel -> nights, meals / per diem -> days out).
    """
    key = str(category or 'other').strip().lower()
    facts = duration_facts or TripDurationCalculator.DEFAULT_FACTS
    fact_name, unit, description = COST_LINE_DEFAULTS.get(key, COST_LINE_DEFAULTS['other'])

    quantity = Decimal(facts.get(fact_name, 0)) if fact_name else Decimal('1')
    return CostAggregator.normalize_item({
        'description': description,
        'quantity': quantity,
        'unit': unit,
        'unit_price': ZERO,
        'category': key,
    })


# =====================================================
# FLIGHT OFFER HELPERS
# =====================================================

def flight_cost_from_offer(offer: Optional[Dict[str, Any]]) -> Decimal:
    if not offer:
        return ZERO
    return to_decimal(offer.get('totalPrice'))


def flatten_offer_segments(offer: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Flatten all itineraries of an offer into persisted segment rows.
    The offer price sits on the first row so stored components add up to
    the flight cost.
    """
    segments = []
    for itinerary in ((offer or {}).get('itineraries') or []):
        if not isinstance(itinerary, dict):
            continue
        for seg in (itinerary.get('segments') or []):
            if not isinstance(seg, dict):
                continue
            segments.append({
                'from': seg.get('from'),
                'to': seg.get('to'),
                'departure': seg.get('departure'),
                'arrival': seg.get('arrival'),
                'carrierCode': seg.get('carrierCode'),
                'flightNumber': seg.get('flightNumber'),
                'price_component': None,
            })

    if segments:
        segments[0]['price_component'] = flight_cost_from_offer(offer)
    return segments


# =====================================================
# QUOTE STATUS
# =====================================================

def resolve_status(requested: Any) -> str:
    """draft <-> sent in any direction; blank means draft."""
    status = str(requested or '').strip().lower()
    if not status:
        return 'draft'
    if status not in QUOTE_STATUSES:
        raise InvalidConfigurationError(
            f"Unknown quote status '{requested}' (expected one of: {', '.join(QUOTE_STATUSES)})"
        )
    return status
