# storefront/main.py
import logging
import time

from flask import Flask, g, jsonify, request
from werkzeug.exceptions import HTTPException

from storefront.blueprints.common import forbidden, is_admin_request
from storefront.config import Config
from storefront.database import Base, close_db, engine, get_db
from storefront.exceptions import StorefrontError
from storefront.blueprints.admin import admin_bp
from storefront.blueprints.drops import drops_bp
from storefront.blueprints.orders import orders_bp
from storefront.blueprints.payments import payments_bp
from storefront.blueprints.reservations import reservations_bp
from storefront.observability import (
    configure_logging,
    increment_counter,
    observe_latency,
    get_metrics_snapshot,
    check_database_health,
    check_reservation_backlog,
)
from storefront.observability.logging_config import ensure_request_id

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(reservations_bp)
app.register_blueprint(orders_bp)
app.register_blueprint(payments_bp)
app.register_blueprint(drops_bp)
app.register_blueprint(admin_bp)

logger = logging.getLogger(__name__)


def init_database():
    """Create tables that do not exist yet."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)


init_database()


def _observability_enabled() -> bool:
    return bool(app.config.get("OBSERVABILITY_ENABLED", True))


@app.before_request
def before_request_logging():
    g.request_started_at = time.perf_counter()
    g.request_id = ensure_request_id()
    if not _observability_enabled():
        return
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )


@app.after_request
def after_request_logging(response):
    response.headers[Config.REQUEST_ID_HEADER] = getattr(g, "request_id", "")
    if not _observability_enabled():
        return response
    started = getattr(g, 'request_started_at', None)
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
    return response


@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.errorhandler(StorefrontError)
def handle_storefront_error(exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("Request failed: %s", exc.message, extra={"code": exc.code})
    return jsonify(exc.to_dict()), exc.status_code


@app.errorhandler(HTTPException)
def handle_http_error(exc: HTTPException):
    return jsonify({"error": exc.description, "code": exc.name.upper().replace(" ", "_")}), exc.code


@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    reservations = check_reservation_backlog(get_db()) if db_status.get("status") == "UP" else {"status": "UNKNOWN"}
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "status": overall,
        "components": {
            "database": db_status,
            "reservations": reservations,
        }
    }), status_code


@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    if not is_admin_request():
        return forbidden()
    return jsonify(get_metrics_snapshot())
