"""
Factorly runtime configuration.

Values are read from the environment (and a local .env file) once at import.
Contract-mirrored constants (insurance cut, claim ratio, interest and penalty
rates) live with the services that use them and are not configurable.
"""
import os
from dotenv import load_dotenv

load_dotenv()

# ── Database ──
# Use /tmp on Vercel serverless (read-only filesystem except /tmp)
if os.environ.get("VERCEL"):
    _default_db = "sqlite:////tmp/factorly.db"
else:
    _default_db = "sqlite:///./factorly.db"
DATABASE_URL = os.getenv("DATABASE_URL", _default_db)

# ── Identity provider (JWT verification) ──
SECRET_KEY = os.getenv("SECRET_KEY", "factorly-secret-key-change-in-production-2026")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "30"))

# ── Auction ──
DEFAULT_PRICE_DROP_RATE_BPS = int(os.getenv("DEFAULT_PRICE_DROP_RATE_BPS", "50"))  # 0.5% per hour

# ── On-chain settlement oracle ──
SETTLEMENT_ORACLE_URL = os.getenv("SETTLEMENT_ORACLE_URL", "")
SETTLEMENT_ORACLE_TIMEOUT = float(os.getenv("SETTLEMENT_ORACLE_TIMEOUT", "10.0"))

# ── Rate limiting ──
RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60"))
RATE_LIMIT_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))
RATE_LIMIT_ANON_MAX_REQUESTS = int(os.getenv("RATE_LIMIT_ANON_MAX_REQUESTS", "20"))
RATE_LIMIT_STORAGE_URI = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")  # e.g. redis://localhost:6379

# ── HTTP ──
FRONTEND_URL = os.getenv("FRONTEND_URL", "")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
