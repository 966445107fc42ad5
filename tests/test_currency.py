from unittest.mock import Mock, patch

import pytest
import requests

from expenseflow.currency import CurrencyConverter, RateCache, get_countries, get_currency_for_country
from expenseflow.errors import ConversionFailure, ServiceUnavailable


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def rates_response(rates, status_code=200):
    response = Mock(status_code=status_code)
    response.json.return_value = {'base': 'EUR', 'rates': rates}
    if status_code != 200:
        response.raise_for_status.side_effect = requests.HTTPError(f'{status_code} Error')
    return response


class TestRateCache:

    def test_entries_expire_after_ttl(self):
        clock = FakeClock()
        cache = RateCache(ttl=60, clock=clock)
        cache.set('EUR', 'USD', 1.1)
        clock.now += 59
        assert cache.get('EUR', 'USD') == 1.1
        clock.now += 1
        assert cache.get('EUR', 'USD') is None
        assert len(cache) == 0

    def test_keys_are_directional(self):
        cache = RateCache()
        cache.set('EUR', 'USD', 1.1)
        assert cache.get('USD', 'EUR') is None

    def test_clear(self):
        cache = RateCache()
        cache.set('EUR', 'USD', 1.1)
        cache.clear()
        assert cache.get('EUR', 'USD') is None


class TestCurrencyConverter:

    def make_converter(self, response, cache=None):
        session = Mock()
        session.get.return_value = response
        return CurrencyConverter('https://rates.example.com/latest/', cache=cache, timeout=3, session=session)

    def test_same_currency_is_identity(self):
        converter = self.make_converter(rates_response({}))
        assert converter.convert(42.5, 'usd', 'USD') == (42.5, 1.0)
        converter.session.get.assert_not_called()

    def test_converts_and_rounds(self):
        converter = self.make_converter(rates_response({'USD': 1.0857}))
        result = converter.convert(100, 'EUR', 'USD')
        assert result.converted_amount == 108.57
        assert result.exchange_rate == 1.0857
        converter.session.get.assert_called_once_with('https://rates.example.com/latest/EUR', timeout=3)

    def test_rates_are_cached(self):
        converter = self.make_converter(rates_response({'USD': 1.1}))
        converter.convert(10, 'EUR', 'USD')
        converter.convert(20, 'EUR', 'USD')
        assert converter.session.get.call_count == 1

    def test_expired_rate_is_refetched(self):
        clock = FakeClock()
        converter = self.make_converter(rates_response({'USD': 1.1}), cache=RateCache(ttl=10, clock=clock))
        converter.convert(10, 'EUR', 'USD')
        clock.now += 11
        converter.convert(10, 'EUR', 'USD')
        assert converter.session.get.call_count == 2

    def test_missing_rate_fails(self):
        converter = self.make_converter(rates_response({'GBP': 0.85}))
        with pytest.raises(ConversionFailure):
            converter.convert(10, 'EUR', 'USD')
        assert len(converter.cache) == 0

    def test_http_error_fails(self):
        converter = self.make_converter(rates_response({}, status_code=500))
        with pytest.raises(ConversionFailure):
            converter.convert(10, 'EUR', 'USD')

    def test_timeout_fails(self):
        converter = self.make_converter(None)
        converter.session.get.side_effect = requests.Timeout('timed out')
        with pytest.raises(ConversionFailure):
            converter.convert(10, 'EUR', 'USD')


class TestCountryCurrency:

    @patch('expenseflow.currency.requests.get')
    def test_first_currency(self, mock_get):
        mock_get.return_value = Mock(status_code=200, json=Mock(return_value=[
            {'name': {'common': 'India'}, 'currencies': {'INR': {'name': 'Indian rupee'}}}]))
        assert get_currency_for_country('India', 'https://countries.example.com/name') == 'INR'
        mock_get.assert_called_once_with(
            'https://countries.example.com/name/India?fields=name,currencies', timeout=5)

    @patch('expenseflow.currency.requests.get')
    def test_unknown_country(self, mock_get):
        mock_get.return_value = Mock(status_code=404)
        assert get_currency_for_country('Atlantis', 'https://countries.example.com/name') is None

    @patch('expenseflow.currency.requests.get')
    def test_network_error(self, mock_get):
        mock_get.side_effect = requests.ConnectionError('down')
        assert get_currency_for_country('India', 'https://countries.example.com/name') is None

    @patch('expenseflow.currency.requests.get')
    def test_malformed_reply(self, mock_get):
        mock_get.return_value = Mock(status_code=200, json=Mock(side_effect=ValueError('Expecting value')))
        assert get_currency_for_country('India', 'https://countries.example.com/name') is None

    @patch('expenseflow.currency.requests.get')
    def test_unexpected_shape(self, mock_get):
        mock_get.return_value = Mock(status_code=200, json=Mock(return_value={'message': 'Not Found'}))
        assert get_currency_for_country('India', 'https://countries.example.com/name') is None


class TestCountryList:

    @patch('expenseflow.currency.requests.get')
    def test_lists_countries_sorted(self, mock_get):
        mock_get.return_value = Mock(status_code=200, json=Mock(return_value=[
            {'name': {'common': 'Japan', 'official': 'Japan'},
             'currencies': {'JPY': {'name': 'Japanese yen', 'symbol': '¥'}}},
            {'name': {'common': 'Antarctica', 'official': 'Antarctica'}, 'currencies': {}},
        ]))
        countries = get_countries('https://countries.example.com/all', timeout=2)
        mock_get.assert_called_once_with('https://countries.example.com/all', timeout=2)
        assert [c['name'] for c in countries] == ['Antarctica', 'Japan']
        assert countries[0]['currencies'] == []
        assert countries[1]['currencies'] == [{'code': 'JPY', 'name': 'Japanese yen', 'symbol': '¥'}]

    @patch('expenseflow.currency.requests.get')
    def test_http_error(self, mock_get):
        response = Mock(status_code=502)
        response.raise_for_status.side_effect = requests.HTTPError('502 Error')
        mock_get.return_value = response
        with pytest.raises(ServiceUnavailable):
            get_countries('https://countries.example.com/all')

    @patch('expenseflow.currency.requests.get')
    def test_malformed_reply(self, mock_get):
        mock_get.return_value = Mock(status_code=200, json=Mock(side_effect=ValueError('Expecting value')))
        with pytest.raises(ServiceUnavailable):
            get_countries('https://countries.example.com/all')
