# core/events.py
"""
Realtime update hook

Services and workers call emit_update(); the web process registers a
Flask-SocketIO emitter and Celery workers register a message-queue emitter.
Without an emitter the call is a no-op.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger(__name__)

_emitter: Optional[Callable[..., Any]] = None


def set_emitter(emitter: Optional[Callable[..., Any]]):
    """Register emitter(event, data, room=...) or clear it with None"""
    global _emitter
    _emitter = emitter


def emit_update(room: str, event: str, data: Dict[str, Any]):
    """Broadcast an update to a Socket.IO room; emitter errors are logged, never raised"""
    if _emitter is None:
        return
    payload = dict(data)
    payload.setdefault('timestamp', datetime.now(timezone.utc).isoformat())
    try:
        _emitter(event, payload, room=room)
    except Exception as e:
        # Socket.IO transports raise their own error types
        logger.warning(f"Failed to publish real-time update: {str(e)}")


def campaign_room(campaign_id: str) -> str:
    return f"campaign_{campaign_id}"


def user_room(user_id: str) -> str:
    return f"user_{user_id}"
