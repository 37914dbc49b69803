import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class Config:
    # Security
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')

    # Flask
    FLASK_ENV = os.getenv('FLASK_ENV', 'development')
    DEBUG = os.getenv('FLASK_ENV') == 'development'
    TESTING = False
    LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

    # CORS
    CORS_ORIGINS = os.getenv('CORS_ORIGINS', 'http://localhost:5173')

    # Outbound HTTP
    HTTP_TIMEOUT_SECONDS = float(os.getenv('HTTP_TIMEOUT_SECONDS', '30'))

    # Flow engine limits
    WHILE_LOOP_MAX_ITERATIONS = int(os.getenv('WHILE_LOOP_MAX_ITERATIONS', '10000'))
    MAX_DELAY_SECONDS = float(os.getenv('MAX_DELAY_SECONDS', '3600'))

    # OAuth2 token refresh
    TOKEN_REFRESH_ENABLED = _env_bool('TOKEN_REFRESH_ENABLED', True)
    TOKEN_REFRESH_INTERVAL_SECONDS = float(os.getenv('TOKEN_REFRESH_INTERVAL_SECONDS', '300'))
    TOKEN_REFRESH_BUFFER_SECONDS = float(os.getenv('TOKEN_REFRESH_BUFFER_SECONDS', '600'))

    # Connector credentials at rest (64-char hex, see CredentialsEncryption.generate_key)
    INTEGRATION_ENCRYPTION_KEY = os.getenv('INTEGRATION_ENCRYPTION_KEY', '')


class TestingConfig(Config):
    TESTING = True
    DEBUG = False
    TOKEN_REFRESH_ENABLED = False
    HTTP_TIMEOUT_SECONDS = 5
    MAX_DELAY_SECONDS = 1
    INTEGRATION_ENCRYPTION_KEY = '0f' * 32
