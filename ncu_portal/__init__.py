import logging
from datetime import timedelta
from flask import Flask
from .config import Config
from .storage import LocalStore, LocalCache
from .supabase_gateway import SupabaseGateway
from .offline.queue import OfflineQueue, PeriodicSync
from .admin.bulk_import import ImportSessionStore

UPLOAD_OVERHEAD_BYTES = 64 * 1024


def create_app(config_object=None, gateway=None, store=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_object or Config)
    app.permanent_session_lifetime = timedelta(seconds=3600)
    if app.config.get("MAX_CONTENT_LENGTH") is None:
        # Import uploads are the largest bodies; allow for multipart framing.
        app.config["MAX_CONTENT_LENGTH"] = app.config["IMPORT_MAX_FILE_BYTES"] + UPLOAD_OVERHEAD_BYTES

    level = logging.getLevelName(str(app.config.get("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level, int):
        level = logging.INFO
    app.logger.setLevel(level)
    logging.getLogger("ncu_portal").setLevel(level)

    # Services shared by blueprints and CLI commands
    gateway = gateway or SupabaseGateway.from_config(app.config)
    store = store or LocalStore(app.config["LOCAL_STORE_PATH"])
    queue = OfflineQueue(store, gateway, batch_size=app.config["OFFLINE_BATCH_SIZE"])
    sync = PeriodicSync(queue, app.config["OFFLINE_SYNC_INTERVAL_MINUTES"])
    queue.is_online = sync.is_online
    queue.load()

    app.extensions["supabase_gateway"] = gateway
    app.extensions["local_store"] = store
    app.extensions["local_cache"] = LocalCache(store)
    app.extensions["offline_queue"] = queue
    app.extensions["offline_sync"] = sync
    app.extensions["import_sessions"] = ImportSessionStore()

    # Register blueprints
    from .auth import auth_bp
    from .offline import offline_api_bp
    from .admin import admin_api_bp
    app.register_blueprint(auth_bp)
    app.register_blueprint(offline_api_bp)
    app.register_blueprint(admin_api_bp)

    from .manager.cli import register_cli
    register_cli(app)

    if app.config.get("OFFLINE_SYNC_ENABLED"):
        sync.start()

    return app
