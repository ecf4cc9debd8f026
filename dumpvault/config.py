import os


class Config:
    """Base configuration"""

    # Secret resolver master key (must be at least 32 characters)
    ENCRYPTION_KEY = os.environ.get('ENCRYPTION_KEY')

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/dumpvault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Storage
    BACKUP_STORAGE_PATH = os.environ.get('BACKUP_STORAGE_PATH') or '/data/backups'
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Bytes read from a dump/restore stream per iteration
    STREAM_CHUNK_SIZE = int(os.environ.get('STREAM_CHUNK_SIZE', 64 * 1024))

    # Scheduler
    SCHEDULER_TIMEZONE = os.environ.get('TZ') or 'UTC'
    # 'allow', 'reject' or 'queue'
    TARGET_OVERLAP_POLICY = os.environ.get('TARGET_OVERLAP_POLICY') or 'reject'
    # Empty string disables the sweep job
    RETENTION_SWEEP_CRON = os.environ.get('RETENTION_SWEEP_CRON', '0 2 * * *')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "dumpvault.db")}'
    BACKUP_STORAGE_PATH = os.path.join(DATA_DIR, 'backups')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration, in-memory database and no log files"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    ENCRYPTION_KEY = 'test-encryption-key-0123456789abcdef'
    LOG_DIR = None
    STREAM_CHUNK_SIZE = 1024


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
