from ticketcore.core.config import Settings


def test_defaults():
    settings = Settings(DB_HOST=None, DB_USER=None, DB_NAME=None, REDIS_URL=None)

    assert settings.permission_cache_ttl == 300
    assert settings.transaction_timeout == 10.0
    assert settings.auto_close_sweep_seconds == 60
    assert settings.default_timezone == "UTC"
    assert settings.redis_url is None


def test_blank_values_become_none():
    settings = Settings(DB_HOST="  ", REDIS_URL="", DEV_PERMISSIONS_HEX="")

    assert settings.database_host is None
    assert settings.redis_url is None
    assert settings.dev_permissions_hex is None


def test_environment_aliases_and_production_flag():
    assert Settings(ENVIRONMENT="Production").is_production is True
    assert Settings(ENVIRONMENT="prod").is_production is True
    assert Settings(APP_ENV="staging").is_production is False
    assert Settings(ENVIRONMENT="development").is_production is False
