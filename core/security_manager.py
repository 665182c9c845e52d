# core/security_manager.py
"""
Security Manager for MailCannon
Implements the security primitives shared by the API and the workers:
- Fernet encryption of stored SMTP passwords
- PBKDF2 password hashing for user accounts
- Shared-secret API key checks
- Redis backed throttling and audit logging
"""

import secrets
import hmac
import base64
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple, Any
from dataclasses import dataclass
import json
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
import redis
from flask import current_app, request, session, has_app_context, has_request_context

logger = logging.getLogger(__name__)


class DecryptionError(Exception):
    """Stored ciphertext could not be decrypted with the configured key"""
    pass


@dataclass
class SecurityAuditLog:
    """Security audit log entry"""
    timestamp: datetime
    event_type: str
    user_id: Optional[str]
    source_ip: str
    resource: str
    action: str
    details: Dict[str, Any]


class SecurityManager:
    """
    Encryption, hashing, throttling and audit trail for the application
    """

    # (max requests, window seconds)
    RATE_LIMITS = {
        'login': (5, 60),
        'api': (100, 60),
        'smtp_test': (10, 60),
    }

    def __init__(self, app=None, redis_client=None):
        """
        Initialize security manager

        Args:
            app: Flask application instance
            redis_client: Redis client for throttling and the audit log
        """
        self.app = app
        if redis_client is None:
            url = app.config.get('REDIS_URL') if app else 'redis://localhost:6379/0'
            redis_client = redis.Redis.from_url(url, decode_responses=True)
        self.redis_client = redis_client

        self.cipher = None
        self._init_encryption()

        self.audit_retention_days = app.config.get('AUDIT_LOG_RETENTION_DAYS', 90) if app else 90
        self.api_secret_key = app.config.get('EMAIL_API_SECRET_KEY') if app else None

        logger.info("SecurityManager initialized")

    def _init_encryption(self):
        """Derive the Fernet key from the configured master key"""
        master_key = self._get_or_generate_master_key()

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b'mailcannon_smtp_credentials',
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(master_key.encode()))
        self.cipher = Fernet(key)

    def _get_or_generate_master_key(self) -> str:
        if self.app and self.app.config.get('ENCRYPTION_KEY'):
            return self.app.config['ENCRYPTION_KEY']

        master_key = secrets.token_urlsafe(32)
        logger.warning("Generated new master key - stored SMTP passwords will not survive a restart")
        return master_key

    def encrypt_sensitive_data(self, data: str) -> str:
        """
        Encrypt sensitive data with authenticated encryption

        Args:
            data: Plain text data to encrypt

        Returns:
            Fernet token as text
        """
        if not isinstance(data, str):
            data = str(data)
        return self.cipher.encrypt(data.encode('utf-8')).decode('ascii')

    def decrypt_sensitive_data(self, encrypted_data: str) -> str:
        """
        Decrypt data produced by encrypt_sensitive_data

        Raises:
            DecryptionError: token tampered with or encrypted under another key
        """
        try:
            return self.cipher.decrypt(encrypted_data.encode('ascii')).decode('utf-8')
        except (InvalidToken, ValueError) as e:
            logger.error("Decryption failed: stored token does not match the encryption key")
            raise DecryptionError("Stored credentials could not be decrypted") from e

    def hash_password(self, password: str, salt: Optional[str] = None) -> Tuple[str, str]:
        """
        Hash password with secure salt

        Args:
            password: Plain text password
            salt: Optional salt (generates new if not provided)

        Returns:
            Tuple of (hashed_password, salt)
        """
        if salt is None:
            salt = secrets.token_hex(16)

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt.encode(),
            iterations=200000,
        )

        hashed = base64.b64encode(kdf.derive(password.encode())).decode()
        return hashed, salt

    def verify_password(self, password: str, hashed_password: str, salt: str) -> bool:
        """Constant-time check of a password against its stored hash"""
        if not password or not hashed_password or not salt:
            return False
        computed_hash, _ = self.hash_password(password, salt)
        return hmac.compare_digest(hashed_password, computed_hash)

    def verify_api_key(self, provided: Optional[str]) -> bool:
        """
        Compare a client supplied key with EMAIL_API_SECRET_KEY

        A server without a configured key rejects every request.
        """
        if not self.api_secret_key or not provided:
            return False
        return hmac.compare_digest(provided.encode(), self.api_secret_key.encode())

    def check_rate_limit(self, key: str, limit_type: str = 'api') -> Tuple[bool, Dict[str, Any]]:
        """
        Check rate limit for given key

        Args:
            key: Rate limit key (IP, user ID, etc.)
            limit_type: Entry of RATE_LIMITS to apply

        Returns:
            Tuple of (allowed, limit_info)
        """
        max_requests, window_seconds = self.RATE_LIMITS.get(limit_type, (100, 60))
        redis_key = f"rate_limit:{limit_type}:{key}"

        try:
            current = self.redis_client.get(redis_key)
            current = int(current) if current is not None else 0

            if current >= max_requests:
                return False, {
                    'limit': max_requests,
                    'current': current,
                    'reset_in': self.redis_client.ttl(redis_key),
                    'window': window_seconds
                }

            pipe = self.redis_client.pipeline()
            pipe.incr(redis_key)
            pipe.expire(redis_key, window_seconds)
            pipe.execute()

            return True, {
                'limit': max_requests,
                'current': current + 1,
                'remaining': max_requests - current - 1,
                'window': window_seconds
            }

        except redis.RedisError as e:
            logger.error(f"Rate limit check failed: {str(e)}")
            # Allow request if rate limiting fails
            return True, {}

    def log_security_event(self, event_type: str, details: Dict[str, Any] = None, user_id: str = None):
        """
        Log security event for audit trail

        Works inside and outside a request, so workers can record events too.

        Args:
            event_type: Type of security event
            details: Additional event details
            user_id: Acting user, defaults to the session user
        """
        in_request = has_request_context()
        now = datetime.now(timezone.utc).replace(tzinfo=None)

        log_entry = SecurityAuditLog(
            timestamp=now,
            event_type=event_type,
            user_id=user_id or (session.get('user_id') if in_request else None),
            source_ip=(request.remote_addr or 'unknown') if in_request else 'system',
            resource=(request.endpoint or request.path) if in_request else 'system',
            action=request.method if in_request else 'system',
            details=details or {}
        )

        logger.info(f"Security event: {event_type} user={log_entry.user_id} ip={log_entry.source_ip}")

        try:
            log_key = f"audit_log:{now.isoformat()}:{secrets.token_hex(4)}"
            self.redis_client.setex(
                log_key,
                86400 * self.audit_retention_days,
                json.dumps(self._audit_log_to_dict(log_entry))
            )
        except redis.RedisError as e:
            logger.error(f"Failed to store security event: {str(e)}")

    def _audit_log_to_dict(self, log_entry: SecurityAuditLog) -> Dict[str, Any]:
        return {
            'timestamp': log_entry.timestamp.isoformat(),
            'event_type': log_entry.event_type,
            'user_id': log_entry.user_id,
            'source_ip': log_entry.source_ip,
            'resource': log_entry.resource,
            'action': log_entry.action,
            'details': log_entry.details
        }

    def get_security_metrics(self, hours: int = 24) -> Dict[str, Any]:
        """
        Summarise audit log entries for the admin dashboard

        Args:
            hours: Number of hours to analyze

        Returns:
            Security metrics dictionary
        """
        end_time = datetime.now(timezone.utc).replace(tzinfo=None)
        start_time = end_time - timedelta(hours=hours)

        try:
            relevant_logs = []
            for key in self.redis_client.scan_iter(match="audit_log:*"):
                log_data = self.redis_client.get(key)
                if not log_data:
                    continue
                try:
                    log_entry = json.loads(log_data)
                    log_time = datetime.fromisoformat(log_entry['timestamp'])
                except (ValueError, KeyError):
                    continue
                if start_time <= log_time <= end_time:
                    relevant_logs.append(log_entry)
        except redis.RedisError as e:
            logger.error(f"Failed to get security metrics: {str(e)}")
            return {'error': str(e)}

        event_types = {}
        source_ips = set()
        for log in relevant_logs:
            event_type = log.get('event_type', 'unknown')
            event_types[event_type] = event_types.get(event_type, 0) + 1
            if log.get('source_ip'):
                source_ips.add(log['source_ip'])

        return {
            'timeframe_hours': hours,
            'total_events': len(relevant_logs),
            'unique_ips': len(source_ips),
            'event_types': event_types,
            'top_event_types': sorted(event_types.items(), key=lambda x: x[1], reverse=True)[:5],
        }


# Global security manager instance
security_manager = None


def init_security_manager(app, redis_client=None):
    """Initialize global security manager"""
    global security_manager
    security_manager = SecurityManager(app, redis_client)
    app.extensions['security_manager'] = security_manager
    return security_manager


def get_security_manager() -> SecurityManager:
    if has_app_context() and 'security_manager' in current_app.extensions:
        return current_app.extensions['security_manager']
    if security_manager is None:
        raise RuntimeError("Security manager not initialized; call create_app() first")
    return security_manager
