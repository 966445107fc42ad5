"""Currency lookup and conversion backed by public exchange-rate APIs."""
import logging
import threading
import time
from collections import namedtuple

import requests

from expenseflow.errors import ConversionFailure, ServiceUnavailable

logger = logging.getLogger(__name__)

DEFAULT_TTL = 24 * 60 * 60

POPULAR_CURRENCIES = [
    {'code': 'USD', 'name': 'US Dollar', 'symbol': '$'},
    {'code': 'EUR', 'name': 'Euro', 'symbol': '€'},
    {'code': 'GBP', 'name': 'British Pound', 'symbol': '£'},
    {'code': 'JPY', 'name': 'Japanese Yen', 'symbol': '¥'},
    {'code': 'CAD', 'name': 'Canadian Dollar', 'symbol': 'C$'},
    {'code': 'AUD', 'name': 'Australian Dollar', 'symbol': 'A$'},
    {'code': 'CHF', 'name': 'Swiss Franc', 'symbol': 'CHF'},
    {'code': 'CNY', 'name': 'Chinese Yuan', 'symbol': '¥'},
    {'code': 'INR', 'name': 'Indian Rupee', 'symbol': '₹'},
    {'code': 'BRL', 'name': 'Brazilian Real', 'symbol': 'R$'},
]

Conversion = namedtuple('Conversion', 'converted_amount exchange_rate')


class RateCache:
    """Exchange rates keyed by (base, target), evicted after `ttl` seconds."""

    def __init__(self, ttl=DEFAULT_TTL, clock=time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._rates = {}
        self._lock = threading.Lock()

    def get(self, base, target):
        key = (base, target)
        with self._lock:
            entry = self._rates.get(key)
            if entry is None:
                return None
            rate, stored_at = entry
            if self._clock() - stored_at >= self.ttl:
                del self._rates[key]
                return None
            return rate

    def set(self, base, target, rate):
        with self._lock:
            self._rates[(base, target)] = (rate, self._clock())

    def clear(self):
        with self._lock:
            self._rates.clear()

    def __len__(self):
        return len(self._rates)


class CurrencyConverter:
    def __init__(self, api_url, cache=None, timeout=5, session=None):
        self.api_url = api_url.rstrip('/')
        self.cache = cache if cache is not None else RateCache()
        self.timeout = timeout
        self.session = session or requests.Session()

    def get_rate(self, base, target):
        base, target = base.upper(), target.upper()
        if base == target:
            return 1.0
        rate = self.cache.get(base, target)
        if rate is not None:
            return rate

        logger.debug('Rate cache miss for %s->%s', base, target)
        try:
            response = self.session.get(f'{self.api_url}/{base}', timeout=self.timeout)
            response.raise_for_status()
            rates = response.json().get('rates', {})
        except (requests.RequestException, ValueError) as e:
            logger.warning('Exchange rate lookup for %s failed: %s', base, e)
            raise ConversionFailure(f'Failed to get exchange rate: {e}')

        if target not in rates:
            raise ConversionFailure(f'Exchange rate not found for {base} to {target}')
        rate = float(rates[target])
        self.cache.set(base, target, rate)
        return rate

    def convert(self, amount, from_curr, to_curr):
        if from_curr.upper() == to_curr.upper():
            return Conversion(amount, 1.0)
        rate = self.get_rate(from_curr, to_curr)
        return Conversion(round(amount * rate, 2), rate)


def get_currency_for_country(country_name, api_url, timeout=5):
    url = f"{api_url.rstrip('/')}/{country_name}?fields=name,currencies"
    try:
        response = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        logger.warning('Country lookup for %s failed: %s', country_name, e)
        return None
    if response.status_code != 200:
        return None
    try:
        data = response.json()
    except ValueError as e:
        logger.warning('Country lookup for %s returned malformed JSON: %s', country_name, e)
        return None
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    currencies = data[0].get('currencies')
    return list(currencies.keys())[0] if currencies else None


def get_countries(api_url, timeout=5):
    """Return every country with its currencies, sorted by common name."""
    try:
        response = requests.get(api_url, timeout=timeout)
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as e:
        logger.warning('Country list lookup failed: %s', e)
        raise ServiceUnavailable('Failed to fetch countries and currencies')
    if not isinstance(data, list):
        raise ServiceUnavailable('Failed to fetch countries and currencies')

    countries = []
    for country in data:
        name = country.get('name') or {}
        currencies = country.get('currencies') or {}
        countries.append({
            'name': name.get('common'),
            'official_name': name.get('official'),
            'currencies': [{'code': code, 'name': info.get('name'), 'symbol': info.get('symbol')}
                           for code, info in currencies.items()],
        })
    return sorted(countries, key=lambda c: c['name'] or '')
