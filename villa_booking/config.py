import os

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise RuntimeError("DATABASE_URL environment variable is not set")

REDIS_URL = os.getenv("REDIS_URL")
if not REDIS_URL:
    raise RuntimeError("REDIS_URL environment variable is not set")

JWT_SECRET = os.getenv("JWT_SECRET")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM") or "HS256"

if not JWT_SECRET:
    raise RuntimeError("JWT_SECRET environment variable is not set")

RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID") or ""
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET") or ""
RAZORPAY_WEBHOOK_SECRET = os.getenv("RAZORPAY_WEBHOOK_SECRET") or ""
RAZORPAY_BASE_URL = os.getenv("RAZORPAY_BASE_URL") or "https://api.razorpay.com/v1"

PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS") or "15")
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS") or "5")

CURRENCY = os.getenv("CURRENCY") or "INR"
MIN_BOOKING_AMOUNT = int(os.getenv("MIN_BOOKING_AMOUNT") or "100")
MAX_BOOKING_AMOUNT = int(os.getenv("MAX_BOOKING_AMOUNT") or "1000000")

CANCELLATION_REQUIRES_APPROVAL = (os.getenv("CANCELLATION_REQUIRES_APPROVAL") or "false").lower() in ("1", "true", "yes")

# 0 disables the periodic sweep; availability reads still expire lazily
EXPIRY_SWEEP_SECONDS = float(os.getenv("EXPIRY_SWEEP_SECONDS") or "0")

RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE") or "120")

VILLA_LOCK_TIMEOUT_SECONDS = float(os.getenv("VILLA_LOCK_TIMEOUT_SECONDS") or "30")
VILLA_LOCK_WAIT_SECONDS = float(os.getenv("VILLA_LOCK_WAIT_SECONDS") or "5")

ENVIRONMENT = (os.getenv("ENVIRONMENT") or "development").lower()
IS_PRODUCTION = ENVIRONMENT == "production"

SERVICE_NAME = "villa-booking"
