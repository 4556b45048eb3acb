from flask import current_app
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

limiter = Limiter(key_func=get_remote_address)


def sync_upload_limit():
    return current_app.config.get('SYNC_UPLOAD_RATE_LIMIT', '30 per minute')
