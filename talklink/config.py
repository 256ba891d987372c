import os
from dotenv import load_dotenv

load_dotenv(os.path.join(os.path.dirname(__file__), '.env'))

class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'dev-secret-key-change-in-prod'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:///talklink.db'

    # Nextcloud Talk credentials (app password, not the login password)
    NEXTCLOUD_URL = os.environ.get('NEXTCLOUD_URL', '')
    NEXTCLOUD_USERNAME = os.environ.get('NEXTCLOUD_USERNAME', '')
    NEXTCLOUD_APP_PASSWORD = os.environ.get('NEXTCLOUD_APP_PASSWORD', '')
    TALK_REQUEST_TIMEOUT = 60  # seconds

    # Naive appointment datetimes are interpreted in this zone
    TIMEZONE = os.environ.get('TIMEZONE', 'UTC')

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()
    TALK_DEBUG_LOGGING = os.environ.get('TALK_DEBUG_LOGGING', 'false').lower() in ('1', 'true', 'yes', 'on')

class DevelopmentConfig(Config):
    DEBUG = True

class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    NEXTCLOUD_URL = 'https://cloud.example.com'
    NEXTCLOUD_USERNAME = 'alice'
    NEXTCLOUD_APP_PASSWORD = 'app-password'
    TIMEZONE = 'UTC'

class ProductionConfig(Config):
    DEBUG = False
    # In prod, rely on env vars strictly
