"""
Wattle Application Factory
"""
import atexit
import logging
from datetime import datetime, timezone

from flask import Flask, jsonify

from config import config

from .auth import build_verifier, init_auth
from .context import EXTENSION_KEY, Services
from .errors import register_error_handlers


def configure_logging(app):
    level = getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    app.logger.setLevel(level)
    logging.getLogger("wattle").setLevel(level)


def create_app(config_name="default", store=None, storage=None, verifier=None, assistant=None):
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    configure_logging(app)

    from .analysis import ResourceAreaAnalyzer
    from .fhir.service import FHIRService
    from .services.openai_service import AssistantClient
    from .storage import build_storage
    from .store import build_store

    store = store if store is not None else build_store(app.config)
    assistant = assistant if assistant is not None else AssistantClient.from_config(app.config)
    fhir = FHIRService(store, default_count=int(app.config.get("FHIR_DEFAULT_COUNT", 100)))
    services = Services(
        store=store,
        storage=storage if storage is not None else build_storage(app.config),
        verifier=verifier if verifier is not None else build_verifier(app.config),
        assistant=assistant,
        fhir=fhir,
        holistic=ResourceAreaAnalyzer(fhir, assistant),
    )
    app.extensions[EXTENSION_KEY] = services
    atexit.register(services.close)

    init_auth(app)
    register_error_handlers(app)

    # Register blueprints
    from .assistant import assistant_bp
    from .fhir.routes import fhir_bp
    from .records import records_bp

    app.register_blueprint(fhir_bp)
    app.register_blueprint(records_bp)
    app.register_blueprint(assistant_bp)

    # Health check endpoint
    @app.route("/healthz")
    def healthz():
        """Health check for load balancers and monitoring"""
        from .services.pdf_service import ocr_ready

        ai_ok, ai_msg = services.assistant.ready()
        ocr_ok, ocr_msg = ocr_ready()
        return jsonify({
            "status": "ok",
            "version": app.config.get("APP_VERSION"),
            "store": services.store.backend,
            "ai": "ok" if ai_ok else ai_msg,
            "ocr": "ok" if ocr_ok else ocr_msg,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    # Version endpoint
    @app.route("/version")
    def version():
        """Version and build info"""
        return jsonify({
            "version": app.config.get("APP_VERSION"),
            "build_time": app.config.get("BUILD_TIME"),
            "git_commit": app.config.get("GIT_COMMIT"),
            "features": {
                "fhir": True,
                "record_upload": True,
                "holistic_analysis": True,
                "voice": True,
            },
        })

    return app
