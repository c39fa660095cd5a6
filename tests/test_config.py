"""Tests for configuration loading and logging setup."""

import logging

from config import DevelopmentConfig, ProductionConfig, TestingConfig, get_config, load_config
from core.logging_setup import configure_logging


class TestGetConfig:

    def test_named_configurations(self):
        assert get_config('development') is DevelopmentConfig
        assert get_config('testing') is TestingConfig
        assert get_config('production') is ProductionConfig

    def test_unknown_name_falls_back_to_production(self):
        assert get_config('staging') is ProductionConfig

    def test_flask_env_selects_the_default(self, monkeypatch):
        monkeypatch.setenv('FLASK_ENV', 'development')

        assert get_config() is DevelopmentConfig


class TestLoadConfig:

    def test_returns_uppercase_settings_only(self):
        config = load_config('testing')

        assert config['DATABASE_URL'] == 'sqlite://'
        assert config['WTF_CSRF_ENABLED'] is False
        assert config['PASSWORD_MIN_LENGTH'] == 12
        assert all(name.isupper() for name in config)

    def test_default_delivery_policy(self):
        config = load_config('production')

        assert config['DELIVERY_RETRY_TRANSPORT_FAILURES'] is False
        assert config['DELIVERY_WORKER_IN_PROCESS'] is False


class TestAppConfig:

    def test_overrides_apply_on_top_of_the_class(self, app):
        assert app.config['TESTING'] is True
        assert app.config['DATABASE_URL'].endswith('newsletter.db')


class TestConfigureLogging:

    def _own_handlers(self, root):
        return [h for h in root.handlers if getattr(h, '_newsletter_handler', False)]

    def test_reconfiguring_does_not_duplicate_handlers(self):
        configure_logging({'LOG_LEVEL': 'INFO'})
        root = configure_logging({'LOG_LEVEL': 'INFO'})

        assert len(self._own_handlers(root)) == 1

    def test_log_file_adds_a_rotating_handler(self, tmp_path):
        log_file = tmp_path / 'logs' / 'newsletter.log'

        root = configure_logging({'LOG_LEVEL': 'DEBUG', 'LOG_FILE': str(log_file)})
        logging.getLogger('tests.logging').warning('written to the file')
        for handler in self._own_handlers(root):
            handler.flush()

        assert len(self._own_handlers(root)) == 2
        assert 'written to the file' in log_file.read_text()
        configure_logging({'LOG_LEVEL': 'INFO'})

    def test_third_party_loggers_are_quieted(self):
        configure_logging({'LOG_LEVEL': 'DEBUG'}, debug=False)

        assert logging.getLogger('werkzeug').level == logging.WARNING
        assert logging.getLogger('sqlalchemy.engine').level == logging.WARNING
        configure_logging({'LOG_LEVEL': 'INFO'})
