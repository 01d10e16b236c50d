"""
Amadeus flight search client
============================
Environment variables:
  AMADEUS_CLIENT_ID       : Amadeus client key (Self-Service API)
  AMADEUS_CLIENT_SECRET   : Amadeus client secret (Self-Service API)
  AMADEUS_ENV             : 'test' or 'production' (default: 'test')
  FLIGHT_SEARCH_CURRENCY  : settlement currency for offers (default: 'EUR')
  FLIGHT_SEARCH_MAX_OFFERS: offer cap per search (default: 10)

Legacy variable names also supported:
  AMADEUS_API_KEY   : alias for AMADEUS_CLIENT_ID
  AMADEUS_API_SECRET: alias for AMADEUS_CLIENT_SECRET

Token lifecycle:
  - Fetched once per process and cached in _amadeus_token_cache
  - Reused while it has more than 30s of life left
  - Invalidated and refreshed once on a 401 response
  - Secrets are NEVER logged

Offers are normalized to the quote FlightOffer shape before leaving this
module; raw Amadeus payloads are never forwarded. Results are not cached
and failed searches are not retried.
"""

from datetime import date
from typing import Any, Dict, List
import os
import time
import logging

import requests as _requests

logger = logging.getLogger(__name__)

TRAVEL_CLASSES = ('ECONOMY', 'PREMIUM_ECONOMY', 'BUSINESS', 'FIRST')


class FlightSearchError(Exception):
    """Flight search failure, carrying the HTTP status the API should answer with."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code


# Shared across request threads. Worst case two threads refresh at once,
# last write wins.
_amadeus_token_cache = {'token': None, 'expires_at': 0}


def _get_amadeus_base_url() -> str:
    """Test or production Amadeus host, picked by AMADEUS_ENV."""
    env = os.environ.get('AMADEUS_ENV', 'test')
    if env == 'production':
        return 'https://api.amadeus.com'
    return 'https://test.api.amadeus.com'


def _get_amadeus_credentials() -> tuple:
    """
    Return (client_id, client_secret) from the environment.
    Raises FlightSearchError(500) when either is missing.
    """
    client_id = (
        os.environ.get('AMADEUS_CLIENT_ID', '').strip()
        or os.environ.get('AMADEUS_API_KEY', '').strip()
    )
    client_secret = (
        os.environ.get('AMADEUS_CLIENT_SECRET', '').strip()
        or os.environ.get('AMADEUS_API_SECRET', '').strip()
    )
    if not client_id or not client_secret:
        raise FlightSearchError(
            "Flight search is not configured. "
            "Set AMADEUS_CLIENT_ID and AMADEUS_CLIENT_SECRET.",
            status_code=500,
        )
    return client_id, client_secret


def _fetch_fresh_amadeus_token() -> str:
    """
    Request a client-credentials token and store it in the cache.
    HTTP errors from the token endpoint propagate as requests exceptions.
    """
    client_id, client_secret = _get_amadeus_credentials()
    token_url = f'{_get_amadeus_base_url()}/v1/security/oauth2/token'

    logger.info("Amadeus OAuth: requesting new access token")

    resp = _requests.post(
        token_url,
        data={
            'grant_type': 'client_credentials',
            'client_id': client_id,
            'client_secret': client_secret,
        },
        timeout=10,
    )
    resp.raise_for_status()

    token_data = resp.json()
    access_token = token_data['access_token']
    expires_in = int(token_data.get('expires_in', 1799))

    _amadeus_token_cache['token'] = access_token
    _amadeus_token_cache['expires_at'] = time.time() + expires_in

    logger.info(f"Amadeus OAuth: new token obtained, valid for {expires_in}s")
    return access_token


def _get_amadeus_token() -> str:
    """Cached token while it has more than 30s left, otherwise a fresh one."""
    now = time.time()
    cached_token = _amadeus_token_cache.get('token')
    expires_at = _amadeus_token_cache.get('expires_at', 0)

    if cached_token and now < expires_at - 30:
        return cached_token

    return _fetch_fresh_amadeus_token()


def _invalidate_amadeus_token() -> None:
    """Drop the cached token so the next call fetches a new one."""
    _amadeus_token_cache['token'] = None
    _amadeus_token_cache['expires_at'] = 0
    logger.info("Amadeus OAuth: token cache invalidated")


# =====================================================
# REQUEST VALIDATION
# =====================================================

def _parse_iso_date(value: str, field: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise FlightSearchError(f"{field} must be a date in YYYY-MM-DD format", status_code=400)


def build_search_params(body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Validate a search request and turn it into Amadeus query parameters.

    Accepts:
    {
        "originLocationCode":      "FRA",
        "destinationLocationCode": "JFK",
        "departureDate":           "2024-03-01",
        "returnDate":              "2024-03-05",   # optional
        "adults":                  1,              # default 1
        "travelClass":             "BUSINESS"      # optional, "ANY" = no filter
    }
    """
    body = body or {}
    origin = str(body.get('originLocationCode') or '').strip().upper()
    destination = str(body.get('destinationLocationCode') or '').strip().upper()
    departure_date = str(body.get('departureDate') or '').strip()
    return_date = str(body.get('returnDate') or '').strip()
    travel_class = str(body.get('travelClass') or '').strip().upper()

    if len(origin) < 3 or not origin.isalpha():
        raise FlightSearchError("Valid origin IATA code required (e.g. FRA)", status_code=400)
    if len(destination) < 3 or not destination.isalpha():
        raise FlightSearchError("Valid destination IATA code required (e.g. JFK)", status_code=400)
    if not departure_date:
        raise FlightSearchError("departureDate is required (YYYY-MM-DD)", status_code=400)

    departs = _parse_iso_date(departure_date, 'departureDate')

    try:
        adults = max(1, int(body.get('adults', 1)))
    except (ValueError, TypeError):
        adults = 1

    params = {
        'originLocationCode': origin,
        'destinationLocationCode': destination,
        'departureDate': departure_date,
        'adults': adults,
        'currencyCode': os.environ.get('FLIGHT_SEARCH_CURRENCY', 'EUR'),
        'max': int(os.environ.get('FLIGHT_SEARCH_MAX_OFFERS', 10)),
    }

    if return_date:
        if _parse_iso_date(return_date, 'returnDate') < departs:
            raise FlightSearchError("returnDate cannot be before departureDate", status_code=400)
        params['returnDate'] = return_date

    if travel_class and travel_class != 'ANY':
        if travel_class not in TRAVEL_CLASSES:
            raise FlightSearchError(
                f"travelClass must be one of: {', '.join(TRAVEL_CLASSES)}", status_code=400
            )
        params['travelClass'] = travel_class

    return params


# =====================================================
# RESPONSE NORMALIZATION
# =====================================================

def _normalize_offer(offer: Dict[str, Any]) -> Dict[str, Any]:
    price = offer['price']

    cabin = None
    traveler_pricings = offer.get('travelerPricings') or []
    if traveler_pricings:
        fare_details = traveler_pricings[0].get('fareDetailsBySegment') or []
        if fare_details:
            cabin = fare_details[0].get('cabin') or None

    itineraries = []
    for it in offer['itineraries']:
        itineraries.append({
            'duration': it.get('duration'),
            'segments': [
                {
                    'from': seg['departure']['iataCode'],
                    'to': seg['arrival']['iataCode'],
                    'departure': seg['departure']['at'],
                    'arrival': seg['arrival']['at'],
                    'carrierCode': seg.get('carrierCode'),
                    'flightNumber': seg.get('number'),
                }
                for seg in it['segments']
            ],
        })

    return {
        'id': offer.get('id'),
        'totalPrice': price['total'],
        'currency': price.get('currency'),
        'cabin': cabin,
        'itineraries': itineraries,
    }


def normalize_offers(raw_offers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Map raw Amadeus offers to FlightOffer dicts, keeping provider order."""
    results = []
    for offer in (raw_offers or []):
        try:
            results.append(_normalize_offer(offer))
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping malformed flight offer {offer.get('id', '?')}: {e}")
    return results


# =====================================================
# SEARCH
# =====================================================

def _amadeus_flight_search_request(params: Dict[str, Any]) -> _requests.Response:
    """
    GET flight-offers with a bearer token.
    A 401 invalidates the cached token and the request is sent once more;
    the second response is returned whatever its status.
    """
    search_url = f'{_get_amadeus_base_url()}/v2/shopping/flight-offers'

    token = _get_amadeus_token()
    resp = _requests.get(
        search_url,
        headers={'Authorization': f'Bearer {token}'},
        params=params,
        timeout=15,
    )

    if resp.status_code == 401:
        logger.warning("Amadeus API returned 401, refreshing token and retrying")
        _invalidate_amadeus_token()
        token = _get_amadeus_token()
        resp = _requests.get(
            search_url,
            headers={'Authorization': f'Bearer {token}'},
            params=params,
            timeout=15,
        )

    return resp


def search_flights(body: Dict[str, Any]) -> List[Dict[str, Any]]:
    """
    Run a flight search and return normalized offers.
    Raises FlightSearchError on invalid input or upstream failure.
    """
    params = build_search_params(body)
    route = f"{params['originLocationCode']}->{params['destinationLocationCode']}"

    try:
        resp = _amadeus_flight_search_request(params)
    except _requests.exceptions.Timeout:
        logger.error(f"Flight search {route} timed out connecting to Amadeus API")
        raise FlightSearchError("Flight search timed out. Please try again.")
    except _requests.exceptions.RequestException as e:
        logger.error(f"Flight search {route} network error: {e}", exc_info=True)
        raise FlightSearchError("Could not reach the flight search service.")

    if not resp.ok:
        detail = ''
        try:
            errors = resp.json().get('errors', [])
            if errors:
                detail = errors[0].get('detail') or errors[0].get('title', '')
        except ValueError:
            pass
        logger.error(f"Amadeus API error {resp.status_code} for {route}: {detail}")
        raise FlightSearchError("Flight search failed")

    offers = normalize_offers(resp.json().get('data', []))
    logger.info(f"Flight search {route} on {params['departureDate']}: {len(offers)} offers returned")
    return offers
