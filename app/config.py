from dotenv import load_dotenv
import os

# Load environment variables from a .env file
load_dotenv()

# Retrieve parts of the database URL from environment variables
DB_USER = os.getenv("DB_USERNAME", "root")
DB_PASSWORD = os.getenv("DB_PASSWORD", "")
DB_HOST = os.getenv("DB_HOST", "127.0.0.1")
DB_PORT = os.getenv("DB_PORT", "3306")
DB_NAME = os.getenv("DB_NAME", "test")

# Auth
SECRET_KEY = os.getenv("SECRET_KEY", "secret")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 30))

# Firebase Configuration
FIREBASE_CREDENTIALS_JSON = os.getenv("FIREBASE_CREDENTIALS_JSON")

# Admin timezone fallback
DEFAULT_TIMEZONE = os.getenv("DEFAULT_TIMEZONE")  # unset means the host's local zone

# Evaluation sweep
CHECK_IN_LOOKBACK_DAYS = int(os.getenv("CHECK_IN_LOOKBACK_DAYS", 30))
MAX_CLOSURE_RETRIES = int(os.getenv("MAX_CLOSURE_RETRIES", 3))
SWEEP_SCHEDULER_ENABLED = os.getenv("SWEEP_SCHEDULER_ENABLED", "false").lower() in ("1", "true", "yes")
SWEEP_INTERVAL_MINUTES = int(os.getenv("SWEEP_INTERVAL_MINUTES", 5))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Build the database URL
DATABASE_URL = os.getenv("DATABASE_URL") or f"mysql+pymysql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
