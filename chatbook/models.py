"""Database models for the chatbook backend.

This module defines the user directory record and the three record sets
owned by the core: phone links, phone claims and message deliveries.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    text,
)

from .database import Base, utcnow


class User(Base):
    """
    SQLAlchemy model representing an application user.

    ``uid`` is the identity issued by the external identity provider.
    ``mobile`` holds the display form of the phone and ``mobile_normalized``
    its lookup key; the phone ledger is kept in step with both.
    """

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    uid = Column(String(128), unique=True, index=True, nullable=False)
    email = Column(String(255), nullable=True)
    display_name = Column(String(100), nullable=True)
    username = Column(String(50), unique=True, index=True, nullable=True)
    mobile = Column(String(32), nullable=True)
    mobile_normalized = Column(String(10), index=True, nullable=True)
    push_token = Column(String(512), nullable=True)
    #: Set when the phone on file was transferred away to another account
    needs_phone_update = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PhoneLink(Base):
    """
    Time-ranged binding between a normalized phone and its owning account.

    At most one link per ``phone_normalized`` may have ``is_current`` set;
    the partial unique index enforces that in the database itself.
    """

    __tablename__ = "phone_links"
    __table_args__ = (
        Index(
            "uq_phone_links_current",
            "phone_normalized",
            unique=True,
            sqlite_where=text("is_current = 1"),
            postgresql_where=text("is_current"),
        ),
        Index("ix_phone_links_user_current", "user_id", "is_current"),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(128), nullable=False, index=True)
    phone_normalized = Column(String(10), nullable=False, index=True)
    full_phone = Column(String(32), nullable=False, default="")
    is_current = Column(Boolean, nullable=False, default=True)
    valid_from = Column(DateTime, nullable=False, default=utcnow)
    valid_to = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class PhoneClaim(Base):
    """
    Request by one account to take over a phone owned by another.

    Only one ``pending`` claim may exist per (phone, requester, target);
    the partial unique index makes concurrent duplicate requests collide.
    """

    __tablename__ = "phone_claims"
    __table_args__ = (
        Index(
            "ix_phone_claims_parties_status",
            "phone_normalized",
            "requester_id",
            "target_owner_id",
            "status",
        ),
        Index(
            "uq_phone_claims_pending",
            "phone_normalized",
            "requester_id",
            "target_owner_id",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    phone_normalized = Column(String(10), nullable=False, index=True)
    requester_id = Column(String(128), nullable=False, index=True)
    target_owner_id = Column(String(128), nullable=False, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    reject_count = Column(Integer, nullable=False, default=0)
    blocked_by_target = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


class MessageDelivery(Base):
    """
    Delivery-status tracking for one relayed chat message.

    Rows are transient: ``expires_at`` is recomputed on every change and
    the expiry sweeper deletes rows once it has passed.
    """

    __tablename__ = "message_deliveries"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(String(128), unique=True, index=True, nullable=False)
    conversation_id = Column(String(300), nullable=False, index=True)
    sender_id = Column(String(128), nullable=False, index=True)
    receiver_id = Column(String(128), nullable=False, index=True)
    message_text = Column(String(4000), nullable=False, default="")
    #: Originating client timestamp in epoch milliseconds
    message_timestamp = Column(BigInteger, nullable=False, default=0, index=True)
    status = Column(String(20), nullable=False, default="accepted", index=True)
    last_error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
