import os
import sys
import socket
import tempfile
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from sqlalchemy import inspect as sa_inspect

from config import Config
from app import create_app
from models import db

LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5


def _env_flag(name, default='1'):
    return os.environ.get(name, default).strip().lower() not in ('0', 'false', 'no', 'off')


def get_lan_ip() -> str:
    """IP address other devices on the network should sync against; 127.0.0.1 when offline."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # UDP connect sends nothing; it only selects the outbound interface
        sock.connect(('8.8.8.8', 80))
        return sock.getsockname()[0]
    except OSError:
        return '127.0.0.1'
    finally:
        sock.close()


def _writable_log_dir(preferred: Path) -> Path:
    try:
        preferred.mkdir(parents=True, exist_ok=True)
        return preferred
    except OSError as e:
        fallback = Path(tempfile.gettempdir()) / 'hisabghar_logs'
        print(f"WARNING: log directory {preferred} is not writable ({e}); using {fallback}")
        fallback.mkdir(parents=True, exist_ok=True)
        return fallback


def configure_logging(log_dir: Path = None) -> Path:
    """Root logging: size-rotated file plus console. Returns the log file path."""
    logfile = _writable_log_dir(log_dir or Config.LOG_DIR) / Config.LOG_FILE.name

    handlers = [
        RotatingFileHandler(logfile, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUPS, encoding='utf-8'),
        logging.StreamHandler(),
    ]
    for handler in handlers:
        handler.setLevel(logging.INFO)

    logging.basicConfig(
        level=os.environ.get('LOGLEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s',
        handlers=handlers,
    )
    logging.info("Log file: %s", logfile)
    logging.info("Base directory: %s", Config.BASE_DIR)
    return logfile


def initialize_database(app):
    """Create any missing tables on first start. Later schema changes go through Flask-Migrate."""
    with app.app_context():
        existing = set(sa_inspect(db.engine).get_table_names())
        missing = sorted(set(db.metadata.tables) - existing)
        if not missing:
            logging.info("Database schema present (%d tables)", len(existing))
            return
        logging.info("Creating tables: %s", ", ".join(missing))
        db.create_all()


def serve(app):
    host = os.environ.get('FLASK_HOST', '0.0.0.0')
    port = int(os.environ.get('FLASK_PORT', '5000'))
    url = f'http://{get_lan_ip()}:{port}/'

    if _env_flag('USE_WAITRESS'):
        from waitress import serve as waitress_serve
        threads = int(os.environ.get('WAITRESS_THREADS', '8'))
        logging.info("HisabGhar sync server listening on %s (waitress, %d threads)", url, threads)
        waitress_serve(app, host=host, port=port, threads=threads)
    else:
        logging.info("HisabGhar sync server listening on %s (Flask development server)", url)
        app.run(host=host, port=port, debug=getattr(Config, 'DEBUG', False), use_reloader=False)


def main():
    configure_logging()
    app = create_app()
    try:
        initialize_database(app)
    except Exception:
        logging.exception("Database initialization failed; check db_config.ini or DATABASE_URL")
        sys.exit(1)
    serve(app)


if __name__ == '__main__':
    main()
