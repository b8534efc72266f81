import os
import dotenv


dotenv.load_dotenv()


# Defaults
DEBUG = False
VERBOSE = False
LOG_PATH = "qb_manager.log"
LOG_LEVEL = "DEBUG" if DEBUG else "INFO"
LOG_ROTATION = "1 week"
LOG_RETENTION = "1 month"

CONFIG_DIR = os.path.join(os.getcwd(), "data")

# Sync engine
SYNC_INTERVAL_MS = 2000                 # Reconcile every instance every 2s
SYNC_WORKERS = 8                        # Threads for remote calls
REQUEST_TIMEOUT = 10                    # Seconds per remote HTTP call

# Live update channel
HEARTBEAT_INTERVAL = 30                 # Seconds between liveness sweeps

MAX_UPLOAD_SIZE = 50 * 1024 * 1024      # 50MB


class Config:
    DEBUG = os.getenv("DEBUG", str(DEBUG)).lower() == "true"
    VERBOSE = os.getenv("VERBOSE", str(VERBOSE)).lower() == "true"

    LOG_PATH = os.getenv("LOG_PATH", LOG_PATH)
    LOG_LEVEL = os.getenv("LOG_LEVEL", LOG_LEVEL)
    LOG_ROTATION = os.getenv("LOG_ROTATION", LOG_ROTATION)
    LOG_RETENTION = os.getenv("LOG_RETENTION", LOG_RETENTION)

    CONFIG_DIR = os.getenv("CONFIG_DIR", CONFIG_DIR)
    SQLITE_DB_PATH = os.getenv("SQLITE_DB_PATH", os.path.join(os.getenv("CONFIG_DIR", CONFIG_DIR), "app.db"))

    SYNC_INTERVAL_MS = int(os.getenv("SYNC_INTERVAL_MS", SYNC_INTERVAL_MS))
    SYNC_WORKERS = int(os.getenv("SYNC_WORKERS", SYNC_WORKERS))
    REQUEST_TIMEOUT = float(os.getenv("REQUEST_TIMEOUT", REQUEST_TIMEOUT))

    HEARTBEAT_INTERVAL = int(os.getenv("HEARTBEAT_INTERVAL", HEARTBEAT_INTERVAL))

    MAX_UPLOAD_SIZE = int(os.getenv("MAX_UPLOAD_SIZE", MAX_UPLOAD_SIZE))

    # Server Configuration
    HOST = os.getenv("HOST", "0.0.0.0")
    PORT = int(os.getenv("PORT", "3000"))

    # Comma separated; "*" allows any origin
    CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
