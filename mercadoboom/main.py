# mercadoboom/main.py
import logging
import time

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from mercadoboom.blueprints import ALL_BLUEPRINTS
from mercadoboom.blueprints.common import require_admin
from mercadoboom.config import Config
from mercadoboom.database import close_db, engine, session_scope
from mercadoboom.errors import MercadoBoomError
from mercadoboom.models import Base
from mercadoboom.observability import (
    check_database_health,
    configure_logging,
    get_metrics_snapshot,
    increment_counter,
    observe_latency,
)
from mercadoboom.observability.logging_config import ensure_request_id
from mercadoboom.services.auth_service import AuthService
from mercadoboom.services.payment_config_service import PaymentConfigService, TransferDiscountService

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
for blueprint in ALL_BLUEPRINTS:
    app.register_blueprint(blueprint)

logger = logging.getLogger(__name__)


def init_database():
    """Create tables and seed the gateway configs, transfer discount and bootstrap admin."""
    try:
        Base.metadata.create_all(bind=engine)
        with session_scope() as db:
            PaymentConfigService(db).seed_defaults()
            TransferDiscountService(db).get_config()
            AuthService(db).ensure_admin()
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)


init_database()


@app.before_request
def before_request_logging():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    started = getattr(g, "request_started_at", None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    if response.status_code >= 500:
        increment_counter(
            "http_errors_total",
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    response.headers.setdefault(Config.REQUEST_ID_HEADER, getattr(g, "request_id", ""))
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.errorhandler(MercadoBoomError)
def handle_domain_error(error: MercadoBoomError):
    if error.status_code >= 500:
        logger.error("Request failed: %s", error.message, extra={"error_code": error.error_code})
    else:
        logger.info("Request rejected: %s", error.message, extra={"error_code": error.error_code})
    return jsonify(error.to_dict()), error.status_code


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify({"error": error.name.lower().replace(" ", "_"), "message": error.description}), error.code


@app.errorhandler(Exception)
def handle_unexpected_error(error: Exception):
    logger.exception("Unhandled error: %s", error)
    return jsonify({"error": "internal_error", "message": "Error interno del servidor"}), 500


@app.route("/health", methods=["GET"])
def health():
    db_status = check_database_health()
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status
        }
    }), status_code


@app.route("/admin/metrics", methods=["GET"])
def admin_metrics():
    require_admin()
    return jsonify(get_metrics_snapshot())
