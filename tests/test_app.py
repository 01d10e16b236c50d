"""Tests for the Flask API routes."""

from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

import pytest

import app as app_module
from flight_search import FlightSearchError
from pricing_engine import QuoteNotFoundError


ONE_WAY_OFFER = {
    'id': '1',
    'totalPrice': '500.00',
    'currency': 'EUR',
    'cabin': 'ECONOMY',
    'itineraries': [
        {'duration': 'PT6H', 'segments': [{
            'from': 'FRA', 'to': 'JFK',
            'departure': '2024-03-01T08:00:00Z', 'arrival': '2024-03-01T14:00:00Z',
            'carrierCode': 'LH', 'flightNumber': '400',
        }]},
    ],
}

ROUND_TRIP_OFFER = {
    'id': '2',
    'totalPrice': '900.00',
    'currency': 'EUR',
    'itineraries': [
        {'duration': 'PT6H', 'segments': [{
            'from': 'FRA', 'to': 'JFK',
            'departure': '2024-03-01T08:00:00Z', 'arrival': '2024-03-01T14:00:00Z',
            'carrierCode': 'LH', 'flightNumber': '400',
        }]},
        {'duration': 'PT6H', 'segments': [{
            'from': 'JFK', 'to': 'FRA',
            'departure': '2024-03-05T14:00:00Z', 'arrival': '2024-03-05T20:00:00Z',
            'carrierCode': 'LH', 'flightNumber': '401',
        }]},
    ],
}


@pytest.fixture
def client():
    app_module.app.config['TESTING'] = True
    return app_module.app.test_client()


@pytest.fixture
def quote_payload():
    return {
        'customer_name': 'Acme GmbH',
        'customer_company': 'Acme',
        'origin_city': 'Frankfurt',
        'destination_city': 'New York',
        'pickup_time': '2024-03-01T06:00',
        'delivery_deadline': '',
        'package_description': 'Spare part',
        'status': 'draft',
        'selected_offer': ONE_WAY_OFFER,
        'time_cost_total': 0,
        'margin_type': 'percent',
        'margin_value': 30,
        'cost_items': [
            {'description': 'Taxi to airport', 'quantity': 2, 'unit_price': 30, 'category': 'ground'},
        ],
        # client-side totals are ignored
        'total_cost': 1,
        'price_to_customer': 1,
    }


class TestSaveQuote:
    """POST /api/quotes"""

    @patch('app.save_quote', return_value=11)
    def test_create_recomputes_totals(self, mock_save, client, quote_payload):
        resp = client.post('/api/quotes', json=quote_payload)

        assert resp.status_code == 200
        body = resp.get_json()
        assert body['id'] == 11
        assert body['totals']['total_cost'] == 560
        assert body['totals']['margin_amount'] == 168
        assert body['totals']['price_to_customer'] == 728

        quote, cost_items, segments = mock_save.call_args.args
        assert mock_save.call_args.kwargs['quote_id'] is None
        assert quote['price_to_customer'] == Decimal('728')
        assert quote['flight_cost_total'] == Decimal('500.00')
        assert quote['ground_cost_total'] == Decimal('60')
        assert quote['delivery_deadline'] is None
        assert quote['currency'] == 'EUR'
        assert quote['nights_at_destination'] == 0
        assert quote['days_out_total'] == 1
        assert cost_items[0]['line_total'] == Decimal('60')
        assert segments[0]['price_component'] == Decimal('500.00')

    @patch('app.save_quote', return_value=7)
    def test_update_passes_id_and_status(self, mock_save, client, quote_payload):
        quote_payload.update({'id': 7, 'status': 'sent'})

        resp = client.post('/api/quotes', json=quote_payload)

        assert resp.status_code == 200
        assert mock_save.call_args.kwargs['quote_id'] == 7
        assert mock_save.call_args.args[0]['status'] == 'sent'

    @patch('app.save_quote', return_value=3)
    def test_round_trip_offer_stores_duration_facts(self, mock_save, client, quote_payload):
        quote_payload['selected_offer'] = ROUND_TRIP_OFFER

        client.post('/api/quotes', json=quote_payload)

        quote, _, segments = mock_save.call_args.args
        assert quote['nights_at_destination'] == 4
        assert quote['days_out_total'] == 5
        assert len(segments) == 2

    @patch('app.save_quote', return_value=4)
    def test_without_offer_uses_posted_flight_cost(self, mock_save, client, quote_payload):
        del quote_payload['selected_offer']
        quote_payload.update({
            'flight_cost_total': 300,
            'cost_items': [],
            'margin_value': 0,
            'flight_segments': [{'from': 'FRA', 'to': 'JFK'}],
        })

        resp = client.post('/api/quotes', json=quote_payload)

        assert resp.get_json()['totals']['price_to_customer'] == 300
        assert mock_save.call_args.args[2] == [{'from': 'FRA', 'to': 'JFK'}]

    @patch('app.save_quote')
    def test_missing_required_fields(self, mock_save, client, quote_payload):
        quote_payload['customer_name'] = '  '

        resp = client.post('/api/quotes', json=quote_payload)

        assert resp.status_code == 400
        assert 'customer_name' in resp.get_json()['error']
        mock_save.assert_not_called()

    @patch('app.save_quote')
    def test_unknown_status(self, mock_save, client, quote_payload):
        quote_payload['status'] = 'archived'

        resp = client.post('/api/quotes', json=quote_payload)

        assert resp.status_code == 400
        mock_save.assert_not_called()

    @patch('app.save_quote')
    def test_unknown_margin_type(self, mock_save, client, quote_payload):
        quote_payload['margin_type'] = 'markup'

        assert client.post('/api/quotes', json=quote_payload).status_code == 400

    @patch('app.save_quote', side_effect=QuoteNotFoundError('Quote 9 not found'))
    def test_update_missing_quote(self, mock_save, client, quote_payload):
        quote_payload['id'] = 9

        assert client.post('/api/quotes', json=quote_payload).status_code == 404

    @patch('app.save_quote', side_effect=RuntimeError('connection refused'))
    def test_store_failure(self, mock_save, client, quote_payload):
        resp = client.post('/api/quotes', json=quote_payload)

        assert resp.status_code == 500
        assert resp.get_json() == {'error': 'Failed to save quote'}

    def test_empty_body(self, client):
        assert client.post('/api/quotes', json={}).status_code == 400

    @patch('app.save_quote')
    def test_non_object_body(self, mock_save, client):
        resp = client.post('/api/quotes', json=[1])

        assert resp.status_code == 400
        assert resp.get_json() == {'error': 'Request body must be a JSON object'}
        mock_save.assert_not_called()

    @pytest.mark.parametrize('quote_id', ['abc', 0, -3, True, [7]])
    @patch('app.save_quote')
    def test_invalid_id(self, mock_save, client, quote_payload, quote_id):
        quote_payload['id'] = quote_id

        resp = client.post('/api/quotes', json=quote_payload)

        assert resp.status_code == 400
        assert 'id' in resp.get_json()['error']
        mock_save.assert_not_called()

    @patch('app.save_quote', return_value=7)
    def test_numeric_string_id(self, mock_save, client, quote_payload):
        quote_payload['id'] = '7'

        assert client.post('/api/quotes', json=quote_payload).status_code == 200
        assert mock_save.call_args.kwargs['quote_id'] == 7

    @pytest.mark.parametrize('field, value', [
        ('cost_items', {'a': 1}),
        ('cost_items', ['taxi']),
        ('cost_items', 'taxi'),
        ('selected_offer', [ONE_WAY_OFFER]),
    ])
    @patch('app.save_quote')
    def test_malformed_nested_fields(self, mock_save, client, quote_payload, field, value):
        quote_payload[field] = value

        resp = client.post('/api/quotes', json=quote_payload)

        assert resp.status_code == 400
        assert field in resp.get_json()['error']
        mock_save.assert_not_called()

    @patch('app.save_quote')
    def test_malformed_flight_segments(self, mock_save, client, quote_payload):
        del quote_payload['selected_offer']
        quote_payload['flight_segments'] = 'FRA-JFK'

        assert client.post('/api/quotes', json=quote_payload).status_code == 400
        mock_save.assert_not_called()


class TestReadQuotes:

    @patch('app.list_quotes')
    def test_list(self, mock_list, client):
        mock_list.return_value = [{
            'id': 1,
            'created_at': datetime(2024, 3, 1, 9, 30),
            'price_to_customer': Decimal('728.00'),
        }]

        resp = client.get('/api/quotes')

        assert resp.status_code == 200
        assert resp.get_json() == [{
            'id': 1,
            'created_at': '2024-03-01T09:30:00',
            'price_to_customer': 728.0,
        }]

    @patch('app.list_quotes', side_effect=RuntimeError('db down'))
    def test_list_failure(self, mock_list, client):
        assert client.get('/api/quotes').status_code == 500

    @patch('app.get_quote')
    def test_get(self, mock_get, client):
        mock_get.return_value = {
            'quote': {'id': 5, 'total_cost': Decimal('560')},
            'costItems': [{'id': 1, 'line_total': Decimal('60')}],
            'flightSegments': [],
        }

        body = client.get('/api/quotes/5').get_json()

        assert body['quote']['total_cost'] == 560
        assert body['costItems'][0]['line_total'] == 60
        mock_get.assert_called_once_with(5)

    @patch('app.get_quote', side_effect=QuoteNotFoundError('Quote 5 not found'))
    def test_get_missing(self, mock_get, client):
        resp = client.get('/api/quotes/5')
        assert resp.status_code == 404
        assert resp.get_json() == {'error': 'Not found'}


class TestTotalsPreview:

    def test_empty_items_zero_margin(self, client):
        resp = client.post('/api/quotes/totals', json={
            'flight_cost_total': 300,
            'time_cost_total': 0,
            'margin_type': 'percent',
            'margin_value': 0,
            'cost_items': [],
        })

        totals = resp.get_json()['totals']
        assert totals['total_cost'] == 300
        assert totals['margin_amount'] == 0
        assert totals['price_to_customer'] == 300

    def test_fixed_negative_margin(self, client):
        resp = client.post('/api/quotes/totals', json={
            'flight_cost_total': 200,
            'margin_type': 'fixed',
            'margin_value': -50,
        })

        totals = resp.get_json()['totals']
        assert totals['margin_amount'] == -50
        assert totals['price_to_customer'] == 150

    def test_returns_normalized_items(self, client):
        resp = client.post('/api/quotes/totals', json={
            'cost_items': [{'quantity': 'x', 'unit_price': 10, 'category': 'hotel', 'line_total': 500}],
        })

        body = resp.get_json()
        assert body['cost_items'][0]['line_total'] == 0
        assert body['totals']['other_cost_total'] == 0

    def test_bad_margin_type(self, client):
        resp = client.post('/api/quotes/totals', json={'margin_type': 'markup'})
        assert resp.status_code == 400

    @pytest.mark.parametrize('cost_items', [{'a': 1}, ['taxi'], [1, 2]])
    def test_cost_items_must_be_list_of_objects(self, client, cost_items):
        resp = client.post('/api/quotes/totals', json={'cost_items': cost_items})

        assert resp.status_code == 400
        assert resp.get_json() == {'error': 'cost_items must be a list of objects'}

    def test_non_object_body(self, client):
        assert client.post('/api/quotes/totals', json=[1, 2]).status_code == 400

    def test_huge_numbers_are_coerced(self, client):
        resp = client.post('/api/quotes/totals', json={
            'flight_cost_total': '1e999999',
            'margin_value': 0,
            'cost_items': [{'quantity': '1e999999', 'unit_price': '1e999999', 'category': 'ground'}],
        })

        assert resp.status_code == 200
        assert resp.get_json()['totals']['total_cost'] == 0


class TestCostItemDefaults:

    def test_hotel_line_from_offer(self, client):
        resp = client.post('/api/quotes/cost-items/new', json={
            'category': 'hotel',
            'selected_offer': ROUND_TRIP_OFFER,
        })
        body = resp.get_json()
        assert body['quantity'] == 4
        assert body['unit'] == 'night'

    def test_per_diem_line_from_facts(self, client):
        resp = client.post('/api/quotes/cost-items/new', json={
            'category': 'per_diem',
            'nights_at_destination': 2,
            'days_out_total': 3,
        })
        assert resp.get_json()['quantity'] == 3

    def test_non_object_body(self, client):
        assert client.post('/api/quotes/cost-items/new', json='hotel').status_code == 400


class TestEmailDraft:

    def test_draft_from_payload(self, client, quote_payload):
        resp = client.post('/api/quotes/email', json=quote_payload)

        email = resp.get_json()['email']
        assert 'Dear Acme GmbH' in email
        assert 'Frankfurt -> New York' in email
        assert '728.00 EUR' in email
        assert 'Pickup: 2024-03-01 06:00' in email
        assert 'Delivery deadline: to be confirmed' in email

    def test_draft_rejects_invalid_quote(self, client, quote_payload):
        quote_payload['status'] = 'void'
        assert client.post('/api/quotes/email', json=quote_payload).status_code == 400

    def test_draft_rejects_non_object_body(self, client):
        assert client.post('/api/quotes/email', json=['Acme']).status_code == 400

    @patch('app.get_quote')
    def test_draft_from_stored_quote(self, mock_get, client):
        mock_get.return_value = {
            'quote': {
                'customer_name': 'Beta Ltd',
                'origin_city': 'Paris',
                'destination_city': 'Tokyo',
                'price_to_customer': Decimal('1500'),
                'currency': 'EUR',
                'pickup_time': datetime(2024, 4, 2, 7, 0),
                'delivery_deadline': datetime(2024, 4, 3, 18, 0),
            },
            'costItems': [],
            'flightSegments': [],
        }

        email = client.get('/api/quotes/3/email').get_json()['email']

        assert 'Paris -> Tokyo' in email
        assert '1,500.00 EUR' in email
        assert 'Delivery deadline: 2024-04-03 18:00' in email

    @patch('app.get_quote', side_effect=QuoteNotFoundError('missing'))
    def test_draft_for_missing_quote(self, mock_get, client):
        assert client.get('/api/quotes/3/email').status_code == 404


class TestFlights:

    @patch('app.search_flights', return_value=[ONE_WAY_OFFER])
    def test_search(self, mock_search, client):
        body = {'originLocationCode': 'FRA', 'destinationLocationCode': 'JFK', 'departureDate': '2024-03-01'}

        resp = client.post('/api/flights/search', json=body)

        assert resp.status_code == 200
        assert resp.get_json() == {'offers': [ONE_WAY_OFFER]}
        mock_search.assert_called_once_with(body)

    @patch('app.search_flights', side_effect=FlightSearchError('Flight search failed', status_code=502))
    def test_search_upstream_failure(self, mock_search, client):
        resp = client.post('/api/flights/search', json={'originLocationCode': 'FRA'})

        assert resp.status_code == 502
        assert resp.get_json() == {'error': 'Flight search failed', 'offers': []}

    @patch('app.search_flights', side_effect=FlightSearchError('departureDate is required', status_code=400))
    def test_search_invalid_request(self, mock_search, client):
        resp = client.post('/api/flights/search', json={'originLocationCode': 'FRA'})
        assert resp.status_code == 400

    def test_search_without_body(self, client):
        assert client.post('/api/flights/search', json={}).status_code == 400

    @patch('app.search_flights')
    def test_search_non_object_body(self, mock_search, client):
        resp = client.post('/api/flights/search', json=['FRA', 'JFK'])

        assert resp.status_code == 400
        assert resp.get_json()['offers'] == []
        mock_search.assert_not_called()

    def test_select_round_trip(self, client):
        resp = client.post('/api/flights/select', json={'offer': ROUND_TRIP_OFFER})

        body = resp.get_json()
        assert body['nights_at_destination'] == 4
        assert body['days_out_total'] == 5
        assert body['flight_cost_total'] == 900
        assert [s['flightNumber'] for s in body['flight_segments']] == ['400', '401']
        assert body['flight_segments'][0]['price_component'] == 900

    def test_select_one_way(self, client):
        body = client.post('/api/flights/select', json={'offer': ONE_WAY_OFFER}).get_json()
        assert body['nights_at_destination'] == 0
        assert body['days_out_total'] == 1

    def test_select_requires_offer(self, client):
        assert client.post('/api/flights/select', json={}).status_code == 400

    def test_select_non_object_body(self, client):
        assert client.post('/api/flights/select', json=[ROUND_TRIP_OFFER]).status_code == 400


def test_health(client):
    resp = client.get('/')
    assert resp.status_code == 200
    assert resp.data == b'OBC Quoter backend running'
