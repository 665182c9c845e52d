from datetime import datetime, timezone
import uuid
from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Text, Boolean, Float, ForeignKey
)
from sqlalchemy.orm import relationship
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


def _iso(value):
    return value.isoformat() if value else None


class CampaignStatus:
    DRAFT = 'Draft'
    SCHEDULED = 'Scheduled'
    RUNNING = 'Running'
    PAUSED = 'Paused'
    COMPLETED = 'Completed'
    FAILED = 'Failed'

    ALL = (DRAFT, SCHEDULED, RUNNING, PAUSED, COMPLETED, FAILED)


class SmtpStatus:
    CONNECTED = 'Connected'
    DISCONNECTED = 'Disconnected'
    ERROR = 'Error'

    ALL = (CONNECTED, DISCONNECTED, ERROR)


class User(db.Model):
    __tablename__ = 'users'

    id = Column(String(36), primary_key=True, default=new_id)
    email = Column(String(255), nullable=False, unique=True, index=True)
    password_hash = Column(String(255), nullable=False)
    password_salt = Column(String(64), nullable=False)
    role = Column(String(10), nullable=False, default='user')  # 'admin' or 'user'
    is_banned = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow)

    # Embedded subscription
    subscription_plan_id = Column(String(36))
    subscription_plan_name = Column(String(100))
    subscription_status = Column(String(20))  # trial, active, pending, rejected, expired
    subscription_start = Column(DateTime)
    subscription_end = Column(DateTime)

    # Relationships
    smtp_accounts = relationship("SmtpAccount", back_populates="user", cascade="all, delete-orphan")
    recipient_lists = relationship("RecipientList", back_populates="user", cascade="all, delete-orphan")
    campaigns = relationship("Campaign", back_populates="user", cascade="all, delete-orphan")
    leads = relationship("Lead", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'

    @property
    def subscription(self):
        if not self.subscription_status:
            return None
        return {
            'plan_id': self.subscription_plan_id,
            'plan_name': self.subscription_plan_name,
            'status': self.subscription_status,
            'start_date': _iso(self.subscription_start),
            'end_date': _iso(self.subscription_end),
        }

    def to_dict(self):
        return {
            'uid': self.id,
            'email': self.email,
            'role': self.role,
            'is_banned': self.is_banned,
            'created_at': _iso(self.created_at),
            'subscription': self.subscription,
        }


class Plan(db.Model):
    __tablename__ = 'plans'

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(100), nullable=False)
    duration_days = Column(Integer, nullable=False)
    smtp_account_limit = Column(Integer, nullable=False, default=1)
    price = Column(Float, nullable=False, default=0.0)
    created_at = Column(DateTime, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'duration_days': self.duration_days,
            'smtp_account_limit': self.smtp_account_limit,
            'price': self.price,
        }


class Payment(db.Model):
    __tablename__ = 'payments'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    user_email = Column(String(255), nullable=False)
    plan_id = Column(String(36), nullable=False)
    plan_name = Column(String(100), nullable=False)
    price = Column(Float, nullable=False)
    transaction_id = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default='pending')  # pending, approved, rejected
    submitted_at = Column(DateTime, default=utcnow)
    reviewed_at = Column(DateTime)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user_email': self.user_email,
            'plan_id': self.plan_id,
            'plan_name': self.plan_name,
            'price': self.price,
            'transaction_id': self.transaction_id,
            'status': self.status,
            'submitted_at': _iso(self.submitted_at),
            'reviewed_at': _iso(self.reviewed_at),
        }


class SmtpAccount(db.Model):
    __tablename__ = 'smtp_accounts'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    server = Column(String(255), nullable=False)
    port = Column(Integer, nullable=False)
    username = Column(String(255), nullable=False)
    secure = Column(Boolean, default=True)  # implicit TLS
    password_encrypted = Column(Text)  # Fernet token, never serialised
    status = Column(String(20), default=SmtpStatus.CONNECTED)
    last_tested_at = Column(DateTime)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="smtp_accounts")

    def to_dict(self):
        return {
            'id': self.id,
            'server': self.server,
            'port': self.port,
            'username': self.username,
            'secure': self.secure,
            'status': self.status,
            'last_tested_at': _iso(self.last_tested_at),
        }


class RecipientList(db.Model):
    __tablename__ = 'recipient_lists'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, default='')
    count = Column(Integer, default=0)
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="recipient_lists")
    recipients = relationship(
        "Recipient", back_populates="recipient_list",
        cascade="all, delete-orphan", order_by="Recipient.position"
    )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description or '',
            'count': self.count or 0,
            'created_at': _iso(self.created_at),
        }


class Recipient(db.Model):
    __tablename__ = 'recipients'

    id = Column(String(36), primary_key=True, default=new_id)
    list_id = Column(String(36), ForeignKey('recipient_lists.id', ondelete='CASCADE'), nullable=False, index=True)
    email = Column(String(255), nullable=False)
    position = Column(Integer, nullable=False, default=0)  # insertion order, drives the send cursor
    added_at = Column(DateTime, default=utcnow)

    recipient_list = relationship("RecipientList", back_populates="recipients")

    def to_dict(self):
        return {'id': self.id, 'email': self.email, 'added_at': _iso(self.added_at)}


class Campaign(db.Model):
    __tablename__ = 'campaigns'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    campaign_name = Column(String(100), nullable=False)
    email_subject = Column(String(255), nullable=False)
    email_body = Column(Text, nullable=False)
    email_variants = Column(JSON, default=list)  # [{'subject': ..., 'body': ...}]
    smtp_account_id = Column(String(36), nullable=False)
    recipient_list_id = Column(String(36), nullable=False)
    schedule_send = Column(Boolean, default=False)
    scheduled_at = Column(DateTime)
    delay = Column(Integer, default=0)  # minimum seconds between two sends
    speed_limit = Column(Integer, default=0)  # emails per hour, 0 = unlimited
    status = Column(String(20), nullable=False, default=CampaignStatus.DRAFT, index=True)
    sent_count = Column(Integer, nullable=False, default=0)
    failed_count = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)
    last_error = Column(Text)
    dispatch_token = Column(String(36))  # identifies the live dispatch chain
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="campaigns")
    failures = relationship("CampaignFailure", back_populates="campaign", cascade="all, delete-orphan")

    @property
    def processed_count(self) -> int:
        return (self.sent_count or 0) + (self.failed_count or 0)

    def to_dict(self):
        return {
            'id': self.id,
            'campaign_name': self.campaign_name,
            'email_subject': self.email_subject,
            'email_body': self.email_body,
            'email_variants': self.email_variants or [],
            'smtp_account_id': self.smtp_account_id,
            'recipient_list_id': self.recipient_list_id,
            'schedule_send': bool(self.schedule_send),
            'scheduled_at': _iso(self.scheduled_at),
            'delay': self.delay or 0,
            'speed_limit': self.speed_limit or 0,
            'status': self.status,
            'sent_count': self.sent_count or 0,
            'failed_count': self.failed_count or 0,
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
            'last_error': self.last_error,
            'created_at': _iso(self.created_at),
        }


class CampaignFailure(db.Model):
    __tablename__ = 'campaign_failures'

    id = Column(String(36), primary_key=True, default=new_id)
    campaign_id = Column(String(36), ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False, index=True)
    recipient_email = Column(String(255), nullable=False, index=True)
    error = Column(Text)
    smtp_code = Column(String(10))
    bounce_category = Column(String(50))
    attempts = Column(Integer, default=1)
    failed_at = Column(DateTime, default=utcnow)

    campaign = relationship("Campaign", back_populates="failures")

    def to_dict(self):
        return {
            'id': self.id,
            'recipient_email': self.recipient_email,
            'error': self.error,
            'smtp_code': self.smtp_code,
            'bounce_category': self.bounce_category,
            'attempts': self.attempts,
            'failed_at': _iso(self.failed_at),
        }


class Lead(db.Model):
    __tablename__ = 'leads'

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(36), ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False)
    phone = Column(String(50))
    note = Column(Text)
    status = Column(String(20), nullable=False, default='New')
    created_at = Column(DateTime, default=utcnow)

    user = relationship("User", back_populates="leads")

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'note': self.note,
            'status': self.status,
            'created_at': _iso(self.created_at),
        }
