# backend/config.py
import os
from dotenv import load_dotenv

load_dotenv()

# Supabase project used to verify bearer tokens
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# SQLAlchemy URL of the trade store (the Supabase Postgres connection string
# in production). Unset means an in-process memory store.
DATABASE_URL = os.getenv("DATABASE_URL")

ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

DEFAULT_OFFER_TTL_HOURS = int(os.getenv("DEFAULT_OFFER_TTL_HOURS", "24"))
MAX_OFFER_TTL_HOURS = int(os.getenv("MAX_OFFER_TTL_HOURS", "168"))
LOCK_TIMEOUT_SECONDS = float(os.getenv("LOCK_TIMEOUT_SECONDS", "5"))
SWEEP_INTERVAL_SECONDS = float(os.getenv("SWEEP_INTERVAL_SECONDS", "60"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]
