# wsgi.py
"""
Entry points for gunicorn, the Celery worker and the development server

    gunicorn wsgi:application
    celery -A wsgi.celery_app worker -Q email_sending,campaign_management
    celery -A wsgi.celery_app beat
"""

import os

from app import create_app
from api.realtime import socketio
from tasks.email_sender import celery_app

application = create_app()

__all__ = ['application', 'celery_app']

if __name__ == '__main__':
    # Development server with SocketIO support
    socketio.run(
        application,
        host=os.environ.get('HOST', '127.0.0.1'),
        port=int(os.environ.get('PORT', 5000)),
        debug=application.debug,
        allow_unsafe_werkzeug=application.debug,
    )
