# api/realtime.py
"""
Socket.IO channel for live campaign progress

Clients join their user room on connect and a campaign room per
subscribe_campaign_updates. Services publish through core.events, which
this module points at the SocketIO instance.
"""

from flask import request, session
from flask_socketio import SocketIO, emit, join_room, leave_room
import logging

from core.events import set_emitter, campaign_room, user_room
from services import campaigns as campaign_service
from services import users as user_service
from services.errors import NotFoundError

logger = logging.getLogger(__name__)

socketio = SocketIO()


def init_socketio(app) -> SocketIO:
    """Initialize SocketIO with Flask app"""
    socketio.init_app(
        app,
        cors_allowed_origins=app.config.get('CORS_ORIGINS'),
        message_queue=app.config.get('SOCKETIO_MESSAGE_QUEUE'),
        async_mode='threading',
    )

    # Register SocketIO event handlers
    socketio.on_event('connect', handle_connect)
    socketio.on_event('disconnect', handle_disconnect)
    socketio.on_event('subscribe_campaign_updates', handle_campaign_subscription)
    socketio.on_event('unsubscribe_campaign_updates', handle_campaign_unsubscription)

    set_emitter(socketio.emit)
    return socketio


def _session_user():
    user = user_service.get_user_profile(session.get('user_id'))
    if user is None or user.is_banned:
        return None
    return user


def handle_connect(auth=None):
    """Reject anonymous clients; signed-in clients follow their own campaigns"""
    user = _session_user()
    if user is None:
        logger.info(f"Rejected anonymous socket {request.sid}")
        return False
    join_room(user_room(user.id))
    logger.info(f"Client {request.sid} connected for user {user.id}")
    emit('connected', {'message': 'Successfully connected to campaign updates'})


def handle_disconnect(*args):
    logger.info(f"Client disconnected: {request.sid}")


def handle_campaign_subscription(data):
    user = _session_user()
    campaign_id = (data or {}).get('campaign_id')
    if user is None:
        emit('error', {'message': 'Authentication required'})
        return
    if not campaign_id:
        emit('error', {'message': 'Campaign ID is required'})
        return

    try:
        campaign = campaign_service.get_campaign(user.id, campaign_id)
    except NotFoundError as e:
        emit('error', {'message': e.message})
        return

    join_room(campaign_room(campaign.id))
    logger.info(f"Client {request.sid} subscribed to campaign {campaign.id}")
    emit('campaign_status', {
        'campaign_id': campaign.id,
        'status': campaign.status,
        'sent_count': campaign.sent_count or 0,
        'failed_count': campaign.failed_count or 0,
        'last_error': campaign.last_error,
    })


def handle_campaign_unsubscription(data):
    campaign_id = (data or {}).get('campaign_id')
    if campaign_id:
        leave_room(campaign_room(campaign_id))
        emit('unsubscribed', {'campaign_id': campaign_id})
