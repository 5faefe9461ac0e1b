import os

APP_NAME = "ServiceHub"

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME", "servicehub")

# Auth settings
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("JWT_EXPIRE_MIN", str(60 * 24)))
BCRYPT_ROUNDS = int(os.getenv("BCRYPT_ROUNDS", "12"))

COOKIE_NAME = "token"
COOKIE_SECURE = os.getenv("COOKIE_SECURE", "false").lower() in ("1", "true", "yes")

MAX_LOGIN_ATTEMPTS = int(os.getenv("MAX_LOGIN_ATTEMPTS", "5"))
LOCK_MINUTES = int(os.getenv("LOCK_MINUTES", "15"))

# Rate limits (requests per window, window in seconds)
SIGNUP_RATE_LIMIT = int(os.getenv("SIGNUP_RATE_LIMIT", "3"))
SIGNUP_RATE_WINDOW = int(os.getenv("SIGNUP_RATE_WINDOW", str(60 * 60)))
LOGIN_RATE_LIMIT = int(os.getenv("LOGIN_RATE_LIMIT", "5"))
LOGIN_RATE_WINDOW = int(os.getenv("LOGIN_RATE_WINDOW", str(15 * 60)))
# Behind a reverse proxy every request arrives from the proxy's address; set
# this only when the proxy overwrites X-Forwarded-For with the real client.
TRUST_FORWARDED_FOR = os.getenv("TRUST_FORWARDED_FOR", "false").lower() in ("1", "true", "yes")

# HTTP
PORT = int(os.getenv("PORT", "8000"))
CORS_ORIGINS = [
    o.strip()
    for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",")
    if o.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
