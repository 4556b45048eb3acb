import os
import configparser
import math
from pathlib import Path
import sys


def _engine_options(uri, max_wait, statement_timeout):
    """
    Engine settings for the process-wide pool.

    - max_wait bounds pool checkout and row-lock waits (seconds).
    - statement_timeout bounds a single statement on the server (seconds).
    """
    if uri.startswith('sqlite'):
        # busy timeout while another connection holds the write lock
        return {'connect_args': {'timeout': max_wait}}
    options = {
        'pool_pre_ping': True,
        'pool_recycle': 280,
        'pool_size': 10,
        'max_overflow': 20,
        'pool_timeout': max_wait,
    }
    if uri.startswith('mysql'):
        options['connect_args'] = {
            'charset': 'utf8mb4',
            'connect_timeout': 10,
            'init_command': (
                f'SET SESSION innodb_lock_wait_timeout={max(1, math.ceil(max_wait))}, '
                f'max_execution_time={int(statement_timeout * 1000)}'
            ),
        }
    return options


class Config:
    if getattr(sys, 'frozen', False):
        BASE_DIR = Path(sys.executable).parent
    else:
        BASE_DIR = Path(__file__).resolve().parent

    RESOURCE_DIR = Path(getattr(sys, '_MEIPASS', BASE_DIR))

    CONFIG_FILE_RUNTIME = BASE_DIR / 'db_config.ini'
    CONFIG_FILE_BUNDLED = RESOURCE_DIR / 'db_config.ini'

    @staticmethod
    def get_log_dir():
        """Get log directory with write permissions."""
        # 1. Check environment variable
        env_log = os.environ.get('HISABGHAR_LOG_DIR')
        if env_log:
            log_dir = Path(env_log)
            try:
                log_dir.mkdir(parents=True, exist_ok=True)
                return log_dir
            except Exception:
                pass

        # 2. User data directory
        try:
            if os.name == 'nt':
                base = Path(os.environ.get('APPDATA', Path.home() / 'AppData' / 'Roaming'))
                log_dir = base / 'HisabGhar' / 'logs'
            else:
                log_dir = Path.home() / '.local' / 'share' / 'hisabghar' / 'logs'
            log_dir.mkdir(parents=True, exist_ok=True)
            return log_dir
        except Exception:
            pass

        # 3. Fallback: BASE_DIR/logs
        try:
            log_dir = Config.BASE_DIR / 'logs'
            log_dir.mkdir(parents=True, exist_ok=True)
            return log_dir
        except Exception:
            import tempfile
            return Path(tempfile.gettempdir()) / 'hisabghar_logs'

    LOG_DIR = get_log_dir.__func__()
    LOG_FILE = LOG_DIR / 'hisabghar.log'

    config_parser = configparser.ConfigParser()
    if CONFIG_FILE_RUNTIME.exists():
        config_parser.read(CONFIG_FILE_RUNTIME)
    elif CONFIG_FILE_BUNDLED.exists():
        config_parser.read(CONFIG_FILE_BUNDLED)

    if config_parser.has_section('database'):
        db_host = config_parser.get('database', 'host', fallback='localhost')
        db_port = config_parser.get('database', 'port', fallback='3306')
        db_user = config_parser.get('database', 'username', fallback='hisabghar_app')
        db_pass = config_parser.get('database', 'password', fallback='')
        db_name = config_parser.get('database', 'database', fallback='hisabghar')
        SQLALCHEMY_DATABASE_URI = f'mysql+pymysql://{db_user}:{db_pass}@{db_host}:{db_port}/{db_name}?charset=utf8mb4'
        DEBUG = config_parser.getboolean('app', 'debug', fallback=False)
    else:
        SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', '')
        DEBUG = os.environ.get('FLASK_DEBUG', 'False').lower() == 'true'

    if not SQLALCHEMY_DATABASE_URI:
        print("WARNING: DATABASE_URL not configured.  Using SQLite fallback.")
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{BASE_DIR / "hisabghar.db"}'

    SECRET_KEY = config_parser.get('app', 'secret_key', fallback=None) or os.environ.get('FLASK_SECRET_KEY')
    if not SECRET_KEY or SECRET_KEY == 'AUTO_GENERATED':
        SECRET_KEY = os.urandom(32).hex()

    # Sync / transaction timing (seconds).
    # tx_max_wait: pool checkout and row-lock waits. tx_timeout: per statement on the server,
    # and for the whole transaction block before it commits.
    TX_MAX_WAIT_SECONDS = float(config_parser.get('sync', 'tx_max_wait', fallback=os.environ.get('HISABGHAR_TX_MAX_WAIT', '5')))
    TX_TIMEOUT_SECONDS = float(config_parser.get('sync', 'tx_timeout', fallback=os.environ.get('HISABGHAR_TX_TIMEOUT', '10')))
    REQUEST_TIMEOUT_SECONDS = float(config_parser.get('sync', 'request_timeout', fallback=os.environ.get('HISABGHAR_REQUEST_TIMEOUT', '30')))
    SLOW_REQUEST_SECONDS = float(config_parser.get('sync', 'slow_request', fallback=os.environ.get('HISABGHAR_SLOW_REQUEST', '10')))

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = _engine_options(SQLALCHEMY_DATABASE_URI, TX_MAX_WAIT_SECONDS, TX_TIMEOUT_SECONDS)

    CACHE_TYPE = 'SimpleCache'
    CACHE_DEFAULT_TIMEOUT = 300
    HEALTH_CACHE_SECONDS = 5

    RATELIMIT_ENABLED = True
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')
    SYNC_UPLOAD_RATE_LIMIT = os.environ.get('HISABGHAR_SYNC_UPLOAD_LIMIT', '30 per minute')

    JSON_SORT_KEYS = False
