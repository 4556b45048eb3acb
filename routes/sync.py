from flask import Blueprint, jsonify
from flask_login import login_required, current_user
import logging

from models import db, utcnow
from extensions import limiter, sync_upload_limit
from .decorators import owner_required
from .errors import InvalidInput
from .snapshot import download_snapshot, upload_snapshot, collect_changes
from .sync_reconciler import reconcile
from .utils import json_body, parse_timestamp, iso_format

sync_bp = Blueprint('sync', __name__, url_prefix='/api/sync')


@sync_bp.route('/upload', methods=['POST'])
@login_required
@limiter.limit(sync_upload_limit)
def upload():
    """Full resync: replace everything the caller owns with the uploaded snapshot."""
    payload = json_body(error=InvalidInput('Invalid data format'))
    data = payload.get('data')
    if not isinstance(data, dict):
        raise InvalidInput('Invalid data format')
    result = upload_snapshot(db.session, current_user.id, data)
    logging.info("Snapshot upload by %s (client timestamp %s): %d rows, %d failed",
                 current_user.id, payload.get('timestamp'), result.total_succeeded, len(result.failed))
    return jsonify({
        'success': True,
        'message': 'Data uploaded successfully',
        'results': result.to_dict(),
    })


@sync_bp.route('/download/<user_id>', methods=['GET'])
@login_required
@owner_required('user_id')
def download(user_id):
    data = download_snapshot(db.session, user_id)
    return jsonify({
        'success': True,
        'data': data,
        'timestamp': iso_format(utcnow()),
    })


@sync_bp.route('/incremental-upload', methods=['POST'])
@login_required
@limiter.limit(sync_upload_limit)
def incremental_upload():
    payload = json_body(error=InvalidInput('Invalid data format'))
    result = reconcile(db.session, current_user.id, payload.get('data'), payload.get('lastSyncTimestamp'))
    return jsonify({
        'success': True,
        'results': result.to_dict(),
        'timestamp': iso_format(utcnow()),
    })


@sync_bp.route('/changes/<user_id>/<timestamp>', methods=['GET'])
@login_required
@owner_required('user_id')
def changes(user_id, timestamp):
    since = parse_timestamp(timestamp, field='timestamp')
    return jsonify({
        'success': True,
        'changes': collect_changes(db.session, user_id, since),
        'timestamp': iso_format(utcnow()),
    })
