import logging
import os
import re

import httpx
from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, root_validator

from .commands import PRODUCT_TYPES, normalize_product_type, validate_minecraft_username
from .database import Base, SessionLocal, engine
from .delivery import deliver_order, find_order, retry_delivery
from .errors import (
    AuthenticationError,
    DeliveryError,
    GatewayNotConfiguredError,
    InvalidOrderError,
    PaymentVerificationError,
    StoreError,
)
from .models import AdminUser, Order, write_log
from .notifications import send_email
from .payments import RAZORPAY_KEY_ID, create_gateway_order, generate_order_code, verify_payment
from .rank_expiry import check_rank_expiry
from .security import (
    create_admin_token,
    credential_for,
    decode_admin_token,
    hash_password,
    token_from_headers,
    validate_admin_username,
    validate_password_format,
    validate_strong_password,
    verify_password,
)
from .utils import now_utc

load_dotenv()

CRON_SECRET = os.getenv("CRON_SECRET")

PAYMENT_FAILED_MESSAGE = "Your payment could not be verified"
PENDING_DELIVERY_MESSAGE = "Your item is pending delivery"
MAX_ORDER_AMOUNT = 1_000_000

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("main")

app = FastAPI(title="Axis SMP Store")
Base.metadata.create_all(bind=engine)

_EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
_DISCORD_FORBIDDEN_RE = re.compile(r"[<>@#:`]")


def _clip(value: str | None, max_length: int) -> str | None:
    if value is None:
        return None
    return value.strip()[:max_length]


class OrderCreate(BaseModel):
    product_type: str
    product_id: str | None = None
    product_name: str
    amount: int
    minecraft_username: str
    discord_username: str
    gift_to: str | None = None
    user_id: str | None = None
    user_email: str | None = None

    @root_validator(skip_on_failure=True)
    def validate_order_fields(cls, values):
        if not validate_minecraft_username(values.get("minecraft_username")):
            raise ValueError("Invalid Minecraft username. Must be 3-16 characters, alphanumeric and underscore only.")

        discord = values.get("discord_username") or ""
        if not 2 <= len(discord) <= 32 or _DISCORD_FORBIDDEN_RE.search(discord):
            raise ValueError("Invalid Discord username format.")

        gift_to = values.get("gift_to") or None
        if gift_to and not validate_minecraft_username(gift_to):
            raise ValueError("Invalid gift recipient username. Must be 3-16 characters, alphanumeric and underscore only.")
        values["gift_to"] = gift_to

        email = values.get("user_email") or None
        if email and (len(email) > 255 or not _EMAIL_RE.fullmatch(email)):
            raise ValueError("Invalid email format.")
        values["user_email"] = email

        amount = values.get("amount")
        if amount is None or amount <= 0 or amount > MAX_ORDER_AMOUNT:
            raise ValueError("Invalid amount.")

        product_type = normalize_product_type(values.get("product_type"))
        if product_type not in PRODUCT_TYPES:
            raise ValueError("Invalid product type.")
        values["product_type"] = product_type

        return values


class PaymentCallback(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str
    order_id: str


class AdminLogin(BaseModel):
    username: str
    password: str


class PasswordChange(BaseModel):
    current_password: str
    new_password: str


class BulkEmail(BaseModel):
    subject: str
    message: str

    @root_validator(skip_on_failure=True)
    def validate_lengths(cls, values):
        if not 1 <= len(values.get("subject") or "") <= 200:
            raise ValueError("Invalid subject (1-200 characters required)")
        if not 1 <= len(values.get("message") or "") <= 10000:
            raise ValueError("Invalid message (1-10000 characters required)")
        return values


def require_admin(
        x_admin_token: str | None = Header(None),
        authorization: str | None = Header(None),
) -> dict:
    token = token_from_headers(x_admin_token, authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        return decode_admin_token(token)
    except AuthenticationError:
        raise HTTPException(status_code=401, detail="Unauthorized")


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.exception("Unhandled store error on %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Request failed"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unexpected error on %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Request failed"})


@app.get("/health")
async def health():
    return {"status": "ok", "timestamp": now_utc().isoformat()}


@app.post("/orders")
async def create_order(order_in: OrderCreate):
    order_code = generate_order_code()
    product_name = _clip(order_in.product_name, 100)

    try:
        gateway_order = await create_gateway_order(order_in.amount, order_code, {
            "product_type": order_in.product_type,
            "product_id": _clip(order_in.product_id or "", 50),
            "minecraft_username": order_in.minecraft_username,
        })
    except (GatewayNotConfiguredError, httpx.HTTPError):
        logger.exception("[RAZORPAY] Failed to create payment order for %s", order_code)
        raise HTTPException(status_code=502, detail="Failed to create order")

    db = SessionLocal()
    try:
        db_order = Order(
            order_id=order_code,
            minecraft_username=order_in.minecraft_username,
            discord_username=_clip(order_in.discord_username, 32),
            gift_to=order_in.gift_to,
            user_email=_clip(order_in.user_email, 255),
            user_id=order_in.user_id,
            product_type=order_in.product_type,
            product_name=product_name,
            amount=order_in.amount,
            razorpay_order_id=gateway_order.get("id"),
            payment_status="pending",
            delivery_status="pending",
        )
        db.add(db_order)
        db.commit()

        write_log(db, "info", f"Order created: {order_code} for {product_name[:50]}", {
            "orderId": order_code,
            "amount": order_in.amount,
            "minecraftUsername": order_in.minecraft_username,
            "userId": order_in.user_id,
        }, db_order.id)

        return {
            "gateway_order_id": db_order.razorpay_order_id,
            "order_id": order_code,
            "key_id": RAZORPAY_KEY_ID,
        }
    finally:
        db.close()


@app.post("/payments/verify")
async def verify_payment_callback(callback: PaymentCallback):
    db = SessionLocal()
    try:
        try:
            order = verify_payment(
                db,
                callback.razorpay_order_id,
                callback.razorpay_payment_id,
                callback.razorpay_signature,
                callback.order_id,
            )
        except PaymentVerificationError as exc:
            logger.warning("Payment verification for %s failed: %s", callback.order_id, exc)
            raise HTTPException(status_code=400, detail=PAYMENT_FAILED_MESSAGE)

        try:
            result = await deliver_order(db, order)
        except DeliveryError as exc:
            logger.error("Delivery of %s aborted: %s", order.order_id, exc)
            return {"success": True, "delivered": False, "status": PENDING_DELIVERY_MESSAGE}

        return {
            "success": True,
            "delivered": result["delivered"],
            "status": "delivered" if result["delivered"] else PENDING_DELIVERY_MESSAGE,
        }
    finally:
        db.close()


@app.get("/orders/{order_id}")
async def order_status(order_id: str):
    db = SessionLocal()
    try:
        order = db.query(Order).filter(Order.order_id == order_id).first()
        if not order:
            raise HTTPException(status_code=404, detail="Order not found")
        return {
            "order_id": order.order_id,
            "product_name": order.product_name,
            "payment_status": order.payment_status,
            "delivery_status": order.delivery_status,
        }
    finally:
        db.close()


@app.post("/admin/login")
async def admin_login(credentials: AdminLogin):
    if not validate_admin_username(credentials.username) or not validate_password_format(credentials.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    db = SessionLocal()
    try:
        admin = db.query(AdminUser).filter(AdminUser.username == credentials.username).first()
        if not admin:
            # keep timing in line with a real password check
            hash_password("dummy_password_to_prevent_timing_attacks")
            logger.info("Admin login failed - unknown user")
            raise HTTPException(status_code=401, detail="Invalid credentials")

        if not verify_password(credentials.password, admin.password_hash):
            logger.info("Admin login failed - invalid password")
            raise HTTPException(status_code=401, detail="Invalid credentials")

        token = create_admin_token(admin.id, admin.username)
        write_log(db, "admin", f"Admin login successful: {admin.username}", {"username": admin.username})
        return {
            "success": True,
            "token": token,
            "must_change_password": bool(admin.must_change_password) or credential_for(admin.password_hash).needs_migration,
        }
    finally:
        db.close()


@app.post("/admin/password")
async def admin_change_password(change: PasswordChange, admin: dict = Depends(require_admin)):
    if not validate_password_format(change.current_password):
        raise HTTPException(status_code=400, detail="Current password is required")
    problem = validate_strong_password(change.new_password)
    if problem:
        raise HTTPException(status_code=400, detail=problem)

    db = SessionLocal()
    try:
        user = db.query(AdminUser).filter(AdminUser.id == admin["sub"]).first()
        if not user:
            logger.error("Admin %s from a valid token no longer exists", admin.get("username"))
            raise HTTPException(status_code=401, detail="Unauthorized")
        if not verify_password(change.current_password, user.password_hash):
            raise HTTPException(status_code=401, detail="Current password is incorrect")

        user.password_hash = hash_password(change.new_password)
        user.must_change_password = False
        user.password_changed_at = now_utc()
        db.commit()
        write_log(db, "admin", f"Admin password changed: {user.username}", {"username": user.username})
        return {"success": True, "token": create_admin_token(user.id, user.username)}
    finally:
        db.close()


@app.post("/admin/orders/{order_id}/retry-delivery")
async def admin_retry_delivery(order_id: str, admin: dict = Depends(require_admin)):
    db = SessionLocal()
    try:
        if not find_order(db, order_id):
            raise HTTPException(status_code=404, detail="Order not found")
        try:
            result = await retry_delivery(db, order_id, actor=admin.get("username"))
        except DeliveryError as exc:
            raise HTTPException(status_code=422, detail=str(exc))

        if not result["delivered"]:
            raise HTTPException(status_code=502, detail=f"RCON delivery failed: {result['error']}")
        return {"success": True, "command": result["command"]}
    finally:
        db.close()


@app.post("/admin/bulk-email")
async def admin_bulk_email(bulk: BulkEmail, admin: dict = Depends(require_admin)):
    db = SessionLocal()
    try:
        rows = db.query(Order.user_email).filter(Order.user_email.isnot(None)).distinct().all()
        recipients = sorted({email for (email,) in rows if email and "@" in email})
        if not recipients:
            raise InvalidOrderError("No valid email addresses found in database")

        sent = failed = 0
        for email in recipients:
            result = await send_email("bulk", email, {"subject": bulk.subject, "message": bulk.message})
            if result["success"]:
                sent += 1
            else:
                failed += 1

        write_log(db, "admin", f"Bulk email sent to {sent} recipients by {admin.get('username')}", {
            "subject": bulk.subject[:50],
            "recipientCount": len(recipients),
            "successCount": sent,
            "failCount": failed,
            "admin": admin.get("username"),
        })
        return {"success": True, "sent": sent, "failed": failed, "total": len(recipients)}
    except InvalidOrderError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    finally:
        db.close()


@app.post("/cron/check-rank-expiry")
async def cron_check_rank_expiry(x_cron_secret: str | None = Header(None)):
    if CRON_SECRET and x_cron_secret != CRON_SECRET:
        raise HTTPException(status_code=401, detail="Unauthorized")

    db = SessionLocal()
    try:
        return await check_rank_expiry(db)
    finally:
        db.close()
