import os

# ---------- Store ----------
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./compost_chain.db")

# ---------- Audit ----------
# public site that resolves /lote/auditoria/<code>
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")

# ---------- Finalization ----------
REQUIRED_WEEKLY_CHECKPOINTS = int(os.getenv("REQUIRED_WEEKLY_CHECKPOINTS", "7"))
CO2E_FACTOR = float(os.getenv("CO2E_FACTOR", "0.766"))  # kg CO2e per kg of waste

# ---------- Concurrency ----------
UNIT_LOCK_TIMEOUT = float(os.getenv("UNIT_LOCK_TIMEOUT", "30"))
READ_RETRIES = int(os.getenv("READ_RETRIES", "4"))
READ_BACKOFF_BASE = float(os.getenv("READ_BACKOFF_BASE", "0.05"))

# ---------- Logging ----------
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("LOG_JSON", "1").lower() in ("1", "true", "yes")
