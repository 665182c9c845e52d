# api/send_email.py
"""
Server-to-server send endpoint

POST /api/send-email is authenticated with the shared secret in the
x-api-key header instead of a session, so it is CSRF exempt and answers
cross-origin requests from any origin.
"""

from flask import Blueprint, request, jsonify, current_app
import logging

from api.auth import limiter
from middleware.security import require_api_key
from services import mailer

send_email_bp = Blueprint('send_email', __name__)
logger = logging.getLogger(__name__)

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type, x-api-key',
}


@send_email_bp.after_request
def add_cors_headers(response):
    response.headers.update(CORS_HEADERS)
    return response


@send_email_bp.route('/send-email', methods=['OPTIONS'])
def send_email_preflight():
    return '', 204


@send_email_bp.route('/send-email', methods=['POST'], provide_automatic_options=False)
@limiter.limit(lambda: current_app.config['SEND_EMAIL_RATE_LIMIT'])
@require_api_key
def send_email():
    """
    Send one email through a user's SMTP account

    Body: to, subject, html, userId, fromEmailId
    """
    body, status = mailer.send_via_api(request.get_json(silent=True))
    return jsonify(body), status
