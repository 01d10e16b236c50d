"""
OBC Quoter Flask Backend
========================
Quote building for on-board-courier shipments:
- Flight search passthrough (Amadeus) with normalized offers
- Flight selection -> trip duration facts + flattened segments
- Stateless totals preview (same engine as save)
- Quote CRUD with full child-row replacement on update
- Plaintext email drafts

No pricing arithmetic happens in this file. Every stored or returned total
comes from pricing_engine.QuoteTotalsEngine.recompute(); totals sent by the
client are ignored.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import os
import logging

from dotenv import load_dotenv

load_dotenv()

from flask import Flask, request, jsonify
from flask_cors import CORS

from pricing_engine import (
    QuoteTotalsEngine,
    TripDurationCalculator,
    CostAggregator,
    PricingEngineError,
    InvalidConfigurationError,
    QuoteNotFoundError,
    DEFAULT_CURRENCY,
    COST_BUCKET_POLICY_VERSION,
    to_decimal,
    parse_margin_policy,
    resolve_status,
    new_cost_item,
    flight_cost_from_offer,
    flatten_offer_segments,
    totals_to_json,
)
from flight_search import search_flights, FlightSearchError
from quote_store import list_quotes, get_quote, save_quote, init_schema
from quote_email import render_quote_email

logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO').upper())
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app, origins=os.environ.get('CORS_ORIGINS', '*'))


# =====================================================
# SERIALIZATION HELPERS
# =====================================================

def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


# =====================================================
# REQUEST VALIDATION
# =====================================================

def _request_object() -> Dict[str, Any]:
    """JSON body as a dict; a missing body is {}. Raises InvalidConfigurationError otherwise."""
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise InvalidConfigurationError('Request body must be a JSON object')
    return payload


def _list_of_objects(payload: Dict[str, Any], field: str) -> List[Dict[str, Any]]:
    value = payload.get(field)
    if value is None or value == '':
        return []
    if not isinstance(value, list) or not all(isinstance(v, dict) for v in value):
        raise InvalidConfigurationError(f'{field} must be a list of objects')
    return value


def _cost_items_from_payload(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [CostAggregator.normalize_item(i) for i in _list_of_objects(payload, 'cost_items')]


def _selected_offer(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    offer = payload.get('selected_offer')
    if not offer:
        return None
    if not isinstance(offer, dict):
        raise InvalidConfigurationError('selected_offer must be an object')
    return offer


def _parse_quote_id(value: Any) -> Optional[int]:
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise InvalidConfigurationError('id must be a positive integer')
    try:
        quote_id = int(value)
    except (TypeError, ValueError):
        raise InvalidConfigurationError('id must be a positive integer')
    if quote_id < 1:
        raise InvalidConfigurationError('id must be a positive integer')
    return quote_id


def _duration_facts_from_payload(payload: Dict[str, Any]) -> Dict[str, int]:
    offer = payload.get('selected_offer')
    if offer:
        return TripDurationCalculator.derive(offer)
    return {
        'nights_at_destination': max(0, int(to_decimal(payload.get('nights_at_destination')))),
        'days_out_total': max(1, int(to_decimal(payload.get('days_out_total')))),
    }


# =====================================================
# QUOTE PAYLOAD -> RECORD
# =====================================================

def _build_quote_record(payload: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a posted quote and recompute its totals.
    Returns {'quote', 'cost_items', 'flight_segments', 'totals'} ready for the store.
    """
    missing = [
        f for f in ('customer_name', 'origin_city', 'destination_city')
        if not str(payload.get(f) or '').strip()
    ]
    if missing:
        raise InvalidConfigurationError(f"Missing required fields: {', '.join(missing)}")

    status = resolve_status(payload.get('status'))
    margin_policy = parse_margin_policy(payload.get('margin_type'), payload.get('margin_value'))

    cost_items = _cost_items_from_payload(payload)
    for item in cost_items:
        if not item['description']:
            item['description'] = item['category']

    offer = _selected_offer(payload)
    if offer:
        flight_cost_total = flight_cost_from_offer(offer)
        flight_segments = flatten_offer_segments(offer)
    else:
        flight_cost_total = payload.get('flight_cost_total')
        flight_segments = list(_list_of_objects(payload, 'flight_segments'))

    totals = QuoteTotalsEngine.recompute(
        cost_items,
        flight_cost_total,
        payload.get('time_cost_total'),
        margin_policy,
    )
    facts = _duration_facts_from_payload(payload)

    weight = _blank_to_none(payload.get('weight_kg'))
    quote = {
        'customer_name': str(payload['customer_name']).strip(),
        'customer_company': payload.get('customer_company'),
        'customer_contact': payload.get('customer_contact'),
        'origin_city': str(payload['origin_city']).strip(),
        'destination_city': str(payload['destination_city']).strip(),
        'pickup_time': _blank_to_none(payload.get('pickup_time')),
        'delivery_deadline': _blank_to_none(payload.get('delivery_deadline')),
        'package_description': payload.get('package_description'),
        'weight_kg': to_decimal(weight) if weight is not None else None,
        'traveler': payload.get('traveler'),
        'status': status,
        'margin_type': margin_policy['type'],
        'margin_value': margin_policy['value'],
        'currency': str(payload.get('currency') or DEFAULT_CURRENCY).strip().upper(),
        'internal_note': payload.get('internal_note') or '',
    }
    quote.update(totals)
    quote.update(facts)

    return {
        'quote': quote,
        'cost_items': cost_items,
        'flight_segments': flight_segments,
        'totals': totals,
    }


# =====================================================
# QUOTES
# =====================================================

@app.route('/api/quotes', methods=['GET'])
def list_quotes_route():
    try:
        return jsonify(_jsonable(list_quotes()))
    except Exception as e:
        logger.error(f"Get quotes error: {e}", exc_info=True)
        return jsonify({'error': 'Failed to fetch quotes'}), 500


@app.route('/api/quotes/<int:quote_id>', methods=['GET'])
def get_quote_route(quote_id):
    try:
        return jsonify(_jsonable(get_quote(quote_id)))
    except QuoteNotFoundError:
        return jsonify({'error': 'Not found'}), 404
    except Exception as e:
        logger.error(f"Get quote {quote_id} error: {e}", exc_info=True)
        return jsonify({'error': 'Failed to fetch quote'}), 500


@app.route('/api/quotes', methods=['POST'])
def save_quote_route():
    """
    Create (no id) or fully update (id given) a quote.
    cost_items and flight_segments (or selected_offer) must be the complete
    current sets; existing child rows are replaced, not merged.
    """
    try:
        payload = _request_object()
        if not payload:
            return jsonify({'error': 'No data provided'}), 400
        quote_id = _parse_quote_id(payload.get('id'))
        record = _build_quote_record(payload)
        saved_id = save_quote(
            record['quote'],
            record['cost_items'],
            record['flight_segments'],
            quote_id=quote_id,
        )
    except QuoteNotFoundError:
        return jsonify({'error': 'Not found'}), 404
    except InvalidConfigurationError as e:
        logger.warning(f"Rejected quote payload: {e}")
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        logger.error(f"Create/update quote error: {e}", exc_info=True)
        return jsonify({'error': 'Failed to save quote'}), 500

    return jsonify({'id': saved_id, 'totals': totals_to_json(record['totals'])})


@app.route('/api/quotes/totals', methods=['POST'])
def quote_totals():
    """Recompute totals for an unsaved quote. Same engine as save."""
    try:
        payload = _request_object()
        margin_policy = parse_margin_policy(payload.get('margin_type'), payload.get('margin_value'))
        cost_items = _cost_items_from_payload(payload)
    except InvalidConfigurationError as e:
        return jsonify({'error': str(e)}), 400

    totals = QuoteTotalsEngine.recompute(
        cost_items,
        payload.get('flight_cost_total'),
        payload.get('time_cost_total'),
        margin_policy,
    )
    return jsonify({
        'totals': totals_to_json(totals),
        'cost_items': _jsonable(cost_items),
        'policy_version': COST_BUCKET_POLICY_VERSION,
    })


@app.route('/api/quotes/cost-items/new', methods=['POST'])
def new_cost_item_route():
    """Category-prefilled cost line (hotel -> nights, meals / per diem -> days out)."""
    try:
        payload = _request_object()
    except InvalidConfigurationError as e:
        return jsonify({'error': str(e)}), 400
    facts = _duration_facts_from_payload(payload)
    item = new_cost_item(payload.get('category'), facts)
    return jsonify(_jsonable(item))


@app.route('/api/quotes/<int:quote_id>/email', methods=['GET'])
def stored_quote_email(quote_id):
    try:
        stored = get_quote(quote_id)
    except QuoteNotFoundError:
        return jsonify({'error': 'Not found'}), 404
    except Exception as e:
        logger.error(f"Email draft for quote {quote_id} failed: {e}", exc_info=True)
        return jsonify({'error': 'Failed to fetch quote'}), 500
    return jsonify({'email': render_quote_email(stored['quote'])})


@app.route('/api/quotes/email', methods=['POST'])
def draft_quote_email():
    """Email draft for an unsaved quote; the price is recomputed first."""
    try:
        payload = _request_object()
        if not payload:
            return jsonify({'error': 'No data provided'}), 400
        record = _build_quote_record(payload)
    except PricingEngineError as e:
        return jsonify({'error': str(e)}), 400
    return jsonify({'email': render_quote_email(record['quote'])})


# =====================================================
# FLIGHTS
# =====================================================

@app.route('/api/flights/search', methods=['POST'])
def flight_search_route():
    body = request.get_json(silent=True)
    if not body:
        return jsonify({'error': 'No search parameters provided', 'offers': []}), 400
    if not isinstance(body, dict):
        return jsonify({'error': 'Request body must be a JSON object', 'offers': []}), 400
    try:
        offers = search_flights(body)
    except FlightSearchError as e:
        return jsonify({'error': str(e), 'offers': []}), e.status_code
    except Exception as e:
        logger.error(f"Flight search error: {e}", exc_info=True)
        return jsonify({'error': 'Flight search failed', 'offers': []}), 500
    return jsonify({'offers': offers})


@app.route('/api/flights/select', methods=['POST'])
def select_flight():
    """Duration facts, flight cost and persisted segment rows for a chosen offer."""
    try:
        body = _request_object()
    except InvalidConfigurationError as e:
        return jsonify({'error': str(e)}), 400
    offer = body.get('offer')
    if not isinstance(offer, dict):
        return jsonify({'error': 'offer is required'}), 400

    facts = TripDurationCalculator.derive(offer)
    logger.info(
        f"Flight offer {offer.get('id')} selected: "
        f"{facts['nights_at_destination']} nights, {facts['days_out_total']} days out"
    )
    result = dict(facts)
    result['flight_cost_total'] = flight_cost_from_offer(offer)
    result['flight_segments'] = flatten_offer_segments(offer)
    return jsonify(_jsonable(result))


# =====================================================
# HEALTH
# =====================================================

@app.route('/')
def index():
    return 'OBC Quoter backend running'


# =====================================================
# ENTRY POINT
# =====================================================

if __name__ == '__main__':
    try:
        init_schema()
    except Exception as e:
        logger.error(f"Error initializing schema: {e}", exc_info=True)
    port = int(os.environ.get('PORT', 4000))
    logger.info(f"Backend listening on port {port}")
    app.run(host='0.0.0.0', port=port, debug=os.environ.get('APP_ENV') != 'production')
