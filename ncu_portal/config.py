import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev")
    SUPABASE_URL = os.environ.get("SUPABASE_URL")
    SUPABASE_KEY = os.environ.get("SUPABASE_KEY")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Device-local key/value store (queue, offline flag, caches)
    LOCAL_STORE_PATH = os.environ.get("LOCAL_STORE_PATH", os.path.join("instance", "local_store.json"))

    OFFLINE_BATCH_SIZE = int(os.environ.get("OFFLINE_BATCH_SIZE", 100))
    OFFLINE_SYNC_INTERVAL_MINUTES = float(os.environ.get("OFFLINE_SYNC_INTERVAL_MINUTES", 15))
    OFFLINE_SYNC_ENABLED = _flag("OFFLINE_SYNC_ENABLED")

    IMPORT_MAX_FILE_BYTES = int(os.environ.get("IMPORT_MAX_FILE_BYTES", 5 * 1024 * 1024))
    IMPORT_ALLOWED_EXTENSIONS = ("csv", "xlsx")
    KNOWN_USERS_CACHE_MINUTES = float(os.environ.get("KNOWN_USERS_CACHE_MINUTES", 15))
