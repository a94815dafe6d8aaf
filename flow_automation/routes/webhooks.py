"""
Webhook ingress - public endpoint turning HTTP calls into flow executions.

    POST /webhook/<trigger_path>
    X-Webhook-Signature: hex(hmac_sha256(body, secret))   (when the trigger has a secret)
"""
import asyncio
import logging

from flask import Blueprint, current_app, jsonify, request

from flow_automation.flow_engine.errors import (
    AuthError,
    StructuralError,
    TriggerNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)
webhooks_bp = Blueprint('webhooks', __name__)


@webhooks_bp.route('/webhook/<path:trigger_path>', methods=['POST'])
def receive_webhook(trigger_path):
    """
    Returns:
        202 {execution_id, status} once the execution reached a terminal state
        400 body is not JSON
        401 bad signature or disabled trigger
        404 unknown path
        422 flow cannot be executed
    """
    dispatcher = current_app.extensions['flow_automation']['dispatcher']

    try:
        execution = asyncio.run(dispatcher.handle_webhook(trigger_path, request.get_data(), request.headers))

    except AuthError as e:
        return jsonify({'error': e.message, 'kind': e.kind}), 401

    except TriggerNotFound as e:
        return jsonify({'error': e.message, 'kind': e.kind}), 404

    except ValidationError as e:
        return jsonify({'error': 'Flow is not valid', 'kind': e.kind, 'errors': e.errors}), 422

    except StructuralError as e:
        return jsonify({'error': e.message, 'kind': e.kind}), 422

    except ValueError as e:
        logger.warning(f"Webhook {trigger_path} sent an invalid JSON body: {e}")
        return jsonify({'error': 'Invalid JSON body'}), 400

    return jsonify({
        'execution_id': execution.id,
        'status': execution.status,
    }), 202
