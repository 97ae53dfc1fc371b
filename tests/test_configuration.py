"""
Configuration tests
Environment settings, webhook URLs, supported networks and the TTL cache
"""

import pytest

from crypto_config import crypto_config
from payment_errors import ConfigurationError
from performance_cache import SimpleCache
from utils.environment import get_webhook_url, is_production_environment, load_settings


class TestLoadSettings:
    """Startup settings resolution"""

    def test_defaults_from_test_environment(self, monkeypatch):
        monkeypatch.setenv('TATUM_XPUB_ETHEREUM', ' xpub-eth ')
        settings = load_settings()

        assert settings.tatum_api_key == 'test-api-key'
        assert settings.webhook_token == 'test-webhook-token'
        assert settings.testnet is True
        assert settings.xpubs['ethereum'] == 'xpub-eth'
        assert settings.order_ttl_seconds == 1800
        assert settings.database_url is None
        assert 'test-api-key' not in repr(settings)
        assert 'test-webhook-token' not in repr(settings)

    @pytest.mark.parametrize('name', ['TATUM_API_KEY', 'TATUM_WEBHOOK_TOKEN'])
    def test_missing_credentials_fail_fast(self, monkeypatch, name):
        monkeypatch.setenv(name, '   ')
        with pytest.raises(ConfigurationError):
            load_settings()

    @pytest.mark.parametrize('name,value', [
        ('ORDER_TTL_SECONDS', 'soon'),
        ('ORDER_TTL_SECONDS', '0'),
        ('PROVIDER_MAX_ATTEMPTS', '0'),
        ('ORDER_CAS_MAX_RETRIES', '-1'),
        ('PROVIDER_TIMEOUT_SECONDS', 'fast'),
    ])
    def test_malformed_values_rejected(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(ConfigurationError):
            load_settings()

    def test_production_selects_mainnet(self, monkeypatch):
        monkeypatch.setenv('APP_ENV', 'Production')
        assert is_production_environment()
        assert load_settings().testnet is False

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv('ADDRESS_REUSE_ENABLED', 'true')
        monkeypatch.setenv('PORT', '8080')
        monkeypatch.setenv('TATUM_API_BASE', 'https://tatum.internal/v3/')
        settings = load_settings()
        assert settings.address_reuse_enabled is True
        assert settings.port == 8080
        assert settings.tatum_api_base == 'https://tatum.internal/v3'


class TestWebhookUrl:

    def test_public_domain_uses_https(self):
        assert get_webhook_url('tatum', 'pay.example.test') == 'https://pay.example.test/webhook/tatum'

    def test_localhost_uses_http(self):
        assert get_webhook_url('tatum', 'localhost:5000') == 'http://localhost:5000/webhook/tatum'

    def test_domain_read_from_environment(self):
        assert get_webhook_url('tatum') == 'https://pay.example.test/webhook/tatum'


class TestCryptoConfig:
    """Supported (currency, network) pairs and chain resolution"""

    @pytest.mark.parametrize('currency,network', [
        ('ETH', 'ethereum'), ('btc', 'bitcoin'), ('MATIC', 'polygon'), ('BNB', 'bsc'),
        ('LTC', 'litecoin'), ('DOGE', 'dogecoin'), ('TRX', 'tron'), ('ETH', 'ethereum-sepolia'),
    ])
    def test_supported_pairs(self, currency, network):
        assert crypto_config.is_supported(currency, network)

    @pytest.mark.parametrize('currency,network', [('ETH', 'polygon'), ('XRP', 'ripple'), ('ETH', '')])
    def test_unsupported_pairs(self, currency, network):
        assert not crypto_config.is_supported(currency, network)

    def test_resolve_chain_per_environment(self):
        assert crypto_config.resolve_chain('ethereum', testnet=True) == 'ethereum-sepolia'
        assert crypto_config.resolve_chain('ethereum', testnet=False) == 'ethereum-mainnet'
        assert crypto_config.resolve_chain('unknown', testnet=True) is None

    def test_same_chain(self):
        assert crypto_config.same_chain('ethereum', 'ethereum-sepolia', testnet=True)
        assert not crypto_config.same_chain('ethereum-mainnet', 'ethereum-sepolia', testnet=True)
        assert not crypto_config.same_chain('ethereum', 'polygon', testnet=True)
        assert not crypto_config.same_chain('', 'ethereum', testnet=True)

    def test_network_entries_are_copies(self):
        entry = crypto_config.get_network('ethereum')
        entry['currency'] = 'XXX'
        assert crypto_config.get_network('ethereum')['currency'] == 'ETH'


class TestSimpleCache:
    """TTL cache used for subscriptions and prices"""

    def test_entries_expire(self):
        now = [100.0]
        cache = SimpleCache(default_ttl=10, clock=lambda: now[0])
        cache.set('k', 'v')
        assert cache.get('k') == 'v'
        now[0] += 11
        assert cache.get('k') is None
    def test_cleanup_and_stats(self):
        now = [0.0]
        cache = SimpleCache(default_ttl=5, clock=lambda: now[0])
        cache.set('a', 1)
        cache.set('b', 2, ttl=60)
        now[0] = 10
        assert cache.cleanup_expired() == 1
        assert cache.stats()['total_entries'] == 1
