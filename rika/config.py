import os
import tempfile


class Config:
    """Base configuration"""

    # Schema
    SCHEMA_VERSION = 1

    # Working directories
    # Each run creates its own unique directory below TEMP_DIR
    TEMP_DIR = os.environ.get('RIKA_TEMP_DIR') or tempfile.gettempdir()
    TEMP_PREFIX = 'rika'
    KEEP_TEMP = os.environ.get('RIKA_KEEP_TEMP', 'false').lower() == 'true'

    # Logging
    LOG_DIR = os.environ.get('RIKA_LOG_DIR') or os.path.expanduser('~/.local/state/rika')
    LOG_FILE = 'rika.log'
    DEBUG = False

    # Compression used when a data provider does not define one
    DEFAULT_COMPRESSION_COMMAND = 'xz'
    DEFAULT_COMPRESSION_EXTENSION = 'xz'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}


def get_config(config_name=None):
    """Return the configuration class selected by name or RIKA_ENV."""
    if config_name is None:
        config_name = os.environ.get('RIKA_ENV', 'default')

    return config.get(config_name, config['default'])
