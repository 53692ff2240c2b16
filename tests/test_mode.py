"""Tests for mode context, money helpers and settings."""

import logging
import threading
import pytest
from pydantic import ValidationError

from payments_mirror.config import Settings
from payments_mirror.errors import InvalidAmountError, InvalidCurrencyError, InvalidModeError
from payments_mirror.mode import ModeContext, ModeCredentials, ModeName, ModeState
from payments_mirror.money import ensure_minor_units, minimum_charge_amount, normalize_currency


class TestModeState:
    """Tests for ModeState."""

    def test_starts_in_test_mode(self, modes):
        info = modes.get_active_mode()

        assert info.name == ModeName.TEST
        assert info.is_live_mode is False
        assert info.has_credentials is True
        assert info.publishable_key_available is True

    def test_initial_mode_from_argument(self, test_credentials):
        modes = ModeState({ModeName.TEST: test_credentials}, initial="live")

        assert modes.active.name == ModeName.LIVE
        assert modes.get_active_mode().has_credentials is False

    def test_switch_mode(self, modes, live_credentials):
        context = modes.switch_mode("live")

        assert context.is_live is True
        assert context.credentials == live_credentials
        assert modes.active is context

    def test_switch_is_idempotent(self, modes):
        first = modes.switch_mode("live")
        second = modes.switch_mode(ModeName.LIVE)

        assert first is second
        assert modes.get_active_mode().name == ModeName.LIVE

    @pytest.mark.parametrize("name", ["production", "LIVE", "", None, 1])
    def test_invalid_mode(self, modes, name):
        with pytest.raises(InvalidModeError):
            modes.switch_mode(name)
        assert modes.active.name == ModeName.TEST

    def test_get_active_mode_without_credentials(self):
        info = ModeState().get_active_mode()

        assert info.name == ModeName.TEST
        assert info.has_credentials is False
        assert info.publishable_key_available is False

    def test_context_is_immutable(self, modes):
        with pytest.raises(ValidationError):
            modes.active.name = ModeName.LIVE
        with pytest.raises(ValidationError):
            modes.active.credentials.secret_key = "sk_live_other"

    def test_context_for(self, modes):
        assert modes.context_for("live").is_live is True
        assert modes.context_for(is_live=False).name == ModeName.TEST
        with pytest.raises(ValueError):
            modes.context_for()

    def test_webhook_secrets_active_first(self, modes):
        assert list(modes.webhook_secrets()) == [ModeName.TEST, ModeName.LIVE]

        modes.switch_mode("live")

        assert list(modes.webhook_secrets()) == [ModeName.LIVE, ModeName.TEST]

    def test_webhook_secrets_skip_empty(self, test_credentials):
        modes = ModeState({ModeName.TEST: test_credentials, ModeName.LIVE: ModeCredentials(secret_key="sk_live_x")})

        assert modes.webhook_secrets() == {ModeName.TEST: test_credentials.webhook_secret}

    def test_readers_never_see_half_switched_state(self, modes):
        """Test that concurrent readers always see a mode with its own credentials."""
        mismatches = []
        stop = threading.Event()

        def reader():
            while not stop.is_set():
                context = modes.active
                if not context.credentials.secret_key.startswith(f"sk_{context.name.value}_"):
                    mismatches.append(context)

        def switcher():
            for index in range(2000):
                modes.switch_mode("live" if index % 2 == 0 else "test")

        readers = [threading.Thread(target=reader) for _ in range(4)]
        for thread in readers:
            thread.start()
        switchers = [threading.Thread(target=switcher) for _ in range(2)]
        for thread in switchers:
            thread.start()
        for thread in switchers:
            thread.join()
        stop.set()
        for thread in readers:
            thread.join()

        assert mismatches == []


class TestModeContext:
    """Tests for ModeContext."""

    def test_has_credentials(self):
        assert ModeContext(name=ModeName.TEST).has_credentials is False
        context = ModeContext(name=ModeName.TEST, credentials=ModeCredentials(secret_key="sk_test_abc"))
        assert context.has_credentials is True

    @pytest.mark.parametrize("secret_key,expected", [
        ("sk_live_1234567890abcdef", "sk_live"),
        ("sk_test_51Habc", "sk_test"),
        ("", "missing"),
        ("not-a-key", "unrecognised"),
        ("sk_live_", "unrecognised"),
    ])
    def test_key_kind_reveals_no_secret(self, secret_key, expected):
        assert ModeCredentials(secret_key=secret_key).key_kind == expected

    def test_switch_logs_only_key_kind(self, caplog):
        modes = ModeState({
            ModeName.TEST: ModeCredentials(secret_key="sk_test_abc"),
            ModeName.LIVE: ModeCredentials(secret_key="sk_live_1234567890abcdef"),
        })

        with caplog.at_level(logging.INFO, logger="payments_mirror.mode"):
            modes.switch_mode("live")

        assert "secret key sk_live)" in caplog.text
        assert "1234" not in caplog.text


class TestMoney:
    """Tests for minor-unit helpers."""

    @pytest.mark.parametrize("amount", [0, 1, 150, 10**9])
    def test_integers_pass(self, amount):
        assert ensure_minor_units(amount) == amount

    @pytest.mark.parametrize("amount", [1.5, 150.0, "150", None, True, False])
    def test_non_integers_rejected(self, amount):
        with pytest.raises(InvalidAmountError):
            ensure_minor_units(amount)

    @pytest.mark.parametrize("currency,expected", [("GBP", "gbp"), (" usd ", "usd"), ("eur", "eur")])
    def test_normalize_currency(self, currency, expected):
        assert normalize_currency(currency) == expected

    @pytest.mark.parametrize("currency", ["", "pounds", "gb", "12a", None])
    def test_invalid_currency(self, currency):
        with pytest.raises(InvalidCurrencyError):
            normalize_currency(currency)

    def test_minimum_charge_amount(self):
        assert minimum_charge_amount("gbp") == 50
        assert minimum_charge_amount("usd") == 50
        assert minimum_charge_amount("xyz") == 50
        assert minimum_charge_amount("gbp", {"gbp": 100}) == 100


ENVIRONMENT_VARIABLES = (
    "STRIPE_SECRET_KEY_TEST", "STRIPE_SECRET_KEY_LIVE",
    "STRIPE_PUBLISHABLE_KEY_TEST", "STRIPE_PUBLISHABLE_KEY_LIVE",
    "STRIPE_PUBLIC_KEY_TEST", "STRIPE_PUBLIC_KEY_LIVE",
    "STRIPE_WEBHOOK_SECRET_TEST", "STRIPE_WEBHOOK_SECRET_LIVE", "STRIPE_WEBHOOK_SECRET",
    "PAYMENTS_DEFAULT_MODE", "PAYMENTS_PROVIDER", "DATABASE_URL",
    "PROVIDER_TIMEOUT_SECONDS", "SYNC_PAGE_SIZE", "RATE_LIMIT", "RATE_LIMIT_ENABLED",
)


class TestSettings:
    """Tests for reading Settings from the environment."""

    @pytest.fixture
    def environ(self, monkeypatch, tmp_path):
        """Start from an empty environment with no .env file in reach."""
        for name in ENVIRONMENT_VARIABLES:
            monkeypatch.delenv(name, raising=False)
        monkeypatch.chdir(tmp_path)

        def set_all(values):
            for name, value in values.items():
                monkeypatch.setenv(name, value)
        return set_all

    def test_defaults(self, environ):
        settings = Settings()

        assert settings.default_mode == ModeName.TEST
        assert settings.provider == "stripe"
        assert settings.database_url == "sqlite+aiosqlite:///./payments_mirror.db"
        assert settings.provider_timeout == 30.0
        assert settings.sync_page_size == 100
        assert settings.rate_limit_enabled is True
        assert settings.test_credentials == ModeCredentials()

    def test_credentials_per_mode(self, environ):
        environ({
            "STRIPE_SECRET_KEY_TEST": "sk_test_1",
            "STRIPE_SECRET_KEY_LIVE": "sk_live_1",
            "STRIPE_PUBLISHABLE_KEY_TEST": "pk_test_1",
            "STRIPE_PUBLIC_KEY_LIVE": "pk_live_1",
            "STRIPE_WEBHOOK_SECRET_LIVE": "whsec_live",
            "STRIPE_WEBHOOK_SECRET": "whsec_shared",
        })

        settings = Settings()

        assert settings.test_credentials.secret_key == "sk_test_1"
        assert settings.test_credentials.publishable_key == "pk_test_1"
        assert settings.live_credentials.publishable_key == "pk_live_1"
        assert settings.test_credentials.webhook_secret == "whsec_shared"
        assert settings.live_credentials.webhook_secret == "whsec_live"
        assert settings.credentials_by_mode()[ModeName.LIVE].secret_key == "sk_live_1"

    def test_empty_variable_counts_as_unset(self, environ):
        environ({"STRIPE_WEBHOOK_SECRET_TEST": "", "STRIPE_WEBHOOK_SECRET": "whsec_shared"})

        assert Settings().test_credentials.webhook_secret == "whsec_shared"

    def test_runtime_options(self, environ):
        environ({
            "PAYMENTS_DEFAULT_MODE": "live",
            "PAYMENTS_PROVIDER": "Simulator",
            "DATABASE_URL": "sqlite+aiosqlite:///:memory:",
            "PROVIDER_TIMEOUT_SECONDS": "2.5",
            "SYNC_PAGE_SIZE": "25",
            "RATE_LIMIT": "5/second",
            "RATE_LIMIT_ENABLED": "false",
        })

        settings = Settings()

        assert settings.default_mode == ModeName.LIVE
        assert settings.provider == "simulator"
        assert settings.database_url == "sqlite+aiosqlite:///:memory:"
        assert settings.provider_timeout == 2.5
        assert settings.sync_page_size == 25
        assert settings.rate_limit == "5/second"
        assert settings.rate_limit_enabled is False

    def test_dotenv_file(self, environ, tmp_path):
        (tmp_path / ".env").write_text("STRIPE_SECRET_KEY_LIVE=sk_live_from_file\nUNRELATED=1\n")

        assert Settings().live_credentials.secret_key == "sk_live_from_file"

    def test_keyword_arguments_override_environment(self, environ):
        environ({"STRIPE_SECRET_KEY_TEST": "sk_test_env", "PAYMENTS_PROVIDER": "stripe"})

        settings = Settings(stripe_secret_key_test="sk_test_arg", provider="simulator")

        assert settings.test_credentials.secret_key == "sk_test_arg"
        assert settings.provider == "simulator"

    def test_missing_secret_key_logged(self, environ, caplog):
        environ({"STRIPE_SECRET_KEY_TEST": "sk_test_1"})

        with caplog.at_level(logging.WARNING, logger="payments_mirror.config"):
            Settings()

        assert "No secret key configured for live mode" in caplog.text
        assert "test mode" not in caplog.text

    def test_invalid_default_mode(self, environ):
        environ({"PAYMENTS_DEFAULT_MODE": "staging"})

        with pytest.raises(InvalidModeError):
            Settings()

    def test_page_size_above_provider_maximum(self, environ):
        environ({"SYNC_PAGE_SIZE": "500"})

        with pytest.raises(ValidationError):
            Settings()
