from quart import Quart, jsonify
from dotenv import load_dotenv
import os
import logging

load_dotenv()


def create_app(services=None):
    from daybook.settings import settings

    from .services.container import AppLifecycle, AppServices
    from .services.day_title_backfill import BackfillInProgress
    from .services.entry_store import (
        AuthenticationMissing,
        EntryWriteError,
        UnreadableEntry,
    )
    from .services.keyring import KeyUnavailable

    services = services or AppServices.create()
    lifecycle = AppLifecycle(
        services,
        sweep_interval=float(settings.SUMMARIES.sweep_interval),
        sweep_limit=int(settings.SUMMARIES.sweep_limit),
    )

    app = Quart(__name__)
    app.config["OWNER_HEADER"] = str(settings.APP.owner_header)
    app.config["JSON_SORT_KEYS"] = False

    app.extensions["daybook"] = services
    app.extensions["daybook_lifecycle"] = lifecycle

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", str(settings.get("LOG_LEVEL") or "INFO")),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    from .routes.entries import entries_bp
    from .routes.days import days_bp
    from .routes.reviews import reviews_bp

    app.register_blueprint(entries_bp)
    app.register_blueprint(days_bp)
    app.register_blueprint(reviews_bp)

    @app.before_serving
    async def _start_lifecycle() -> None:
        await lifecycle.start()

    @app.after_serving
    async def _stop_lifecycle() -> None:
        await lifecycle.stop()

    def _error(status: int, message: str):
        return jsonify({"error": message}), status

    @app.errorhandler(AuthenticationMissing)
    async def authentication_missing(e):
        return _error(401, "Authentication required")

    @app.errorhandler(KeyUnavailable)
    async def key_unavailable(e):
        app.logger.error("Encryption key unavailable: %s", e)
        return _error(503, "Encryption key unavailable")

    @app.errorhandler(EntryWriteError)
    async def entry_write_failed(e):
        return _error(502, str(e))

    @app.errorhandler(UnreadableEntry)
    async def entry_unreadable(e):
        return _error(409, str(e))

    @app.errorhandler(BackfillInProgress)
    async def backfill_running(e):
        return _error(409, str(e))

    @app.errorhandler(ValueError)
    async def invalid_value(e):
        return _error(400, str(e))

    @app.errorhandler(404)
    async def not_found(e):
        return _error(404, getattr(e, "description", None) or "Not found")

    @app.errorhandler(400)
    async def bad_request(e):
        return _error(400, getattr(e, "description", None) or "Bad request")

    app.logger.info("Application initialized")
    return app
