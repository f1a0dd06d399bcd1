import os

# ---- Backend (PostgREST / Supabase)
SUPABASE_URL         = os.environ.get("SUPABASE_URL", "http://localhost:54321").rstrip("/")
SUPABASE_SERVICE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")
BACKEND_TIMEOUT      = float(os.environ.get("BACKEND_TIMEOUT", "15"))

# ---- Read source: "backend" (live queries) or "snapshot" (DuckDB file from etl/run.py)
DATA_SOURCE = os.environ.get("DATA_SOURCE", "backend").strip().lower()
DATA_DIR    = os.environ.get("DATA_DIR", "./data")
SNAPSHOT_DB = os.environ.get("SNAPSHOT_DB", os.path.join(DATA_DIR, "portal.duckdb"))

# ---- Email relay (Resend)
RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RESEND_API_URL = os.environ.get("RESEND_API_URL", "https://api.resend.com/emails")
EMAIL_ENABLED  = os.environ.get("EMAIL_ENABLED", "1").strip().lower() not in ("0", "false", "no")
EMAIL_TIMEOUT  = float(os.environ.get("EMAIL_TIMEOUT", "10"))
BRAND_NAME     = os.environ.get("BRAND_NAME", "Bare Naked Pet Co.")
ORDER_EMAIL_TO = os.environ.get("ORDER_EMAIL_TO", "info@barenakedpet.com")
ORDER_EMAIL_CC = os.environ.get("ORDER_EMAIL_CC", "")
EMAIL_FROM     = os.environ.get("EMAIL_FROM", ORDER_EMAIL_TO)

# ---- Analytics knobs
AT_RISK_DAYS = int(os.environ.get("AT_RISK_DAYS", "90"))
