"""
Health check endpoint
"""
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from flow_automation.database import db
from flow_automation.utils import utcnow

bp = Blueprint('health', __name__, url_prefix='/api')


@bp.route('/health', methods=['GET'])
def health_check():
    """API is up and the database answers"""
    engine = current_app.extensions['flow_automation']['executor']

    try:
        db.session.execute(text('SELECT 1'))
    except SQLAlchemyError as e:
        return jsonify({
            'status': 'unhealthy',
            'message': 'API is online but database connection failed',
            'error': str(e),
            'timestamp': utcnow().isoformat(),
        }), 503

    return jsonify({
        'status': 'healthy',
        'message': 'API is online and database connection is working',
        'active_executions': len(engine.active_executions()),
        'timestamp': utcnow().isoformat(),
    }), 200
