import uuid

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, String, Text

from .database import Base
from .utils import now_utc


def _uuid() -> str:
    return str(uuid.uuid4())


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, unique=True, index=True, nullable=False)
    minecraft_username = Column(String, nullable=False)
    discord_username = Column(String, nullable=True)
    gift_to = Column(String, nullable=True)
    user_email = Column(String, nullable=True)
    user_id = Column(String, nullable=True, index=True)
    product_type = Column(String, nullable=False)  # rank, crate, money
    product_name = Column(String, nullable=False)
    amount = Column(Integer, nullable=False)  # whole rupees
    razorpay_order_id = Column(String, nullable=True, index=True)
    razorpay_payment_id = Column(String, nullable=True)
    payment_status = Column(String, default="pending")  # pending, paid, delivered, failed, refunded
    delivery_status = Column(String, default="pending")  # pending, delivered, failed
    command_executed = Column(Text, nullable=True)
    error_log = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc)
    updated_at = Column(DateTime(timezone=True), default=now_utc, onupdate=now_utc)

    @property
    def recipient(self) -> str:
        return self.gift_to or self.minecraft_username


class ActiveRank(Base):
    __tablename__ = "active_ranks"

    id = Column(String, primary_key=True, default=_uuid)
    # orders.id, looked up only; no FK so clearing orders keeps the grant
    order_id = Column(String, nullable=True, index=True)
    minecraft_username = Column(String, nullable=False)
    rank_name = Column(String, nullable=False)
    granted_at = Column(DateTime(timezone=True), default=now_utc)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_active = Column(Boolean, default=True, index=True)
    removed_at = Column(DateTime(timezone=True), nullable=True)


class Log(Base):
    __tablename__ = "logs"

    id = Column(Integer, primary_key=True, index=True)
    category = Column(String, index=True)
    message = Column(Text)
    details = Column("metadata", JSON, nullable=True)
    order_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), default=now_utc)


class AdminUser(Base):
    __tablename__ = "admin_users"

    id = Column(String, primary_key=True, default=_uuid)
    username = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    must_change_password = Column(Boolean, default=False)
    password_changed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=now_utc)


def write_log(db, category: str, message: str, details: dict | None = None, order_id: str | None = None) -> Log:
    entry = Log(category=category, message=message, details=details, order_id=order_id)
    db.add(entry)
    db.commit()
    return entry
