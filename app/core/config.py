"""
Configuration - variables d'environnement du moteur d'intelligence.
"""
import os

# Infra
DATABASE_URL = os.getenv("DATABASE_URL", "postgresql+psycopg2://dealintel:dealintel@db:5432/dealintel")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Auth (JWT émis par le service d'auth, on ne fait que le vérifier)
JWT_SECRET = os.getenv("JWT_SECRET", "change-me")
JWT_ALGO = os.getenv("JWT_ALGO", "HS256")

# Matching
MATCH_THRESHOLD = float(os.getenv("MATCH_THRESHOLD", "50"))
MATCH_NOTIFY_THRESHOLD = float(os.getenv("MATCH_NOTIFY_THRESHOLD", "70"))

# Propensity cache (read-through, TTL)
PROPENSITY_TTL_HOURS = int(os.getenv("PROPENSITY_TTL_HOURS", "24"))

# Prédictions de réassort
MIN_TRANSACTIONS_FOR_PREDICTION = int(os.getenv("MIN_TRANSACTIONS_FOR_PREDICTION", "2"))
PREDICTION_DUE_WINDOW_DAYS = int(os.getenv("PREDICTION_DUE_WINDOW_DAYS", "7"))

# Batch
BATCH_MAX_WORKERS = int(os.getenv("BATCH_MAX_WORKERS", "4"))
BATCH_ITEM_TIMEOUT_SECONDS = float(os.getenv("BATCH_ITEM_TIMEOUT_SECONDS", "30"))
CRON_LOCK_TTL_SECONDS = int(os.getenv("CRON_LOCK_TTL_SECONDS", "3600"))

# Notifications sortantes (optionnel)
DISCORD_ALERTS_WEBHOOK_URL = os.getenv("DISCORD_ALERTS_WEBHOOK_URL", "")

# API
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",")
    if origin.strip()
]
