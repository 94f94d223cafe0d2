from __future__ import annotations

import atexit
import logging
import logging.config
import os
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from flask import Flask, g, request
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from redis import Redis
from rq import Queue
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker

from .config import settings
from .metrics import queue_gauge
from .routes.checkout import bp as checkout_bp
from .routes.health import health_bp
from .routes.webhook import webhook_bp
from .services.checkout import CheckoutService
from .services.gateway import MercadoPagoClient
from .services.jobs import ReconciliationQueue
from .services.notifications import NotificationDispatcher
from .services.payment_sync import PaymentSyncService
from .services.projects import ProjectRepository
from .services.reconciler import WebhookReconciler
from .services.task_templates import TaskTemplateGenerator

LOGGER = structlog.get_logger()


def configure_logging() -> None:
    config_path = Path(os.getenv("LOGGING_CONFIG", "logging.conf"))

    if config_path.exists():
        logging.config.fileConfig(config_path, disable_existing_loggers=False)
    else:
        logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _start_payment_sync(app: Flask, payment_sync: PaymentSyncService) -> None:
    sync_logger = LOGGER.bind(job="payment_sync")

    def _run_payment_sync() -> None:
        try:
            payment_sync.sync_pending_payments()
        except Exception:
            sync_logger.exception("payment_sync_failed")
        finally:
            app.db_session.remove()  # type: ignore[attr-defined]

    try:
        scheduler = BackgroundScheduler()
        scheduler.add_job(
            _run_payment_sync,
            IntervalTrigger(minutes=max(1, settings.payment_sync_interval_minutes)),
            id="payment_sync",
            replace_existing=True,
        )
        scheduler.start()
        atexit.register(lambda: scheduler.shutdown(wait=False))
        app.payment_sync_scheduler = scheduler  # type: ignore[attr-defined]
    except Exception:
        sync_logger.error("payment_sync_scheduler_failed", exc_info=True)


def init_app(gateway: MercadoPagoClient | None = None) -> Flask:
    """Build the Flask app and every collaborator it owns.

    ``gateway`` lets callers (tests, scripts) supply their own payment client.
    """

    configure_logging()

    app = Flask(__name__)

    engine = create_engine(settings.database_url, pool_pre_ping=True, future=True)
    session_factory = sessionmaker(bind=engine, expire_on_commit=False, future=True)
    SessionLocal = scoped_session(session_factory)

    redis_client = Redis.from_url(settings.redis_url, decode_responses=True)
    task_queue = Queue(settings.queue_name, connection=redis_client)
    dead_letter_queue = Queue(settings.dead_letter_queue_name, connection=redis_client)

    app.redis = redis_client  # type: ignore[attr-defined]
    app.db_session = SessionLocal  # type: ignore[attr-defined]
    app.db_engine = engine  # type: ignore[attr-defined]
    app.task_queue = task_queue  # type: ignore[attr-defined]
    app.dead_letter_queue = dead_letter_queue  # type: ignore[attr-defined]

    if gateway is None:
        gateway = MercadoPagoClient(settings.mercadopago_access_token)
    projects = ProjectRepository(SessionLocal)
    notifier = NotificationDispatcher(SessionLocal)
    task_generator = TaskTemplateGenerator(SessionLocal, notifier)
    reconciliation_queue = ReconciliationQueue(task_queue, dead_letter_queue)

    app.gateway = gateway  # type: ignore[attr-defined]
    app.projects = projects  # type: ignore[attr-defined]
    app.notifier = notifier  # type: ignore[attr-defined]
    app.reconciliation_queue = reconciliation_queue  # type: ignore[attr-defined]
    app.reconciler = WebhookReconciler(  # type: ignore[attr-defined]
        gateway,
        projects,
        notifier,
        task_generator,
        SessionLocal,
        cas_attempts=settings.reconcile_cas_attempts,
    )
    app.checkout_service = CheckoutService(  # type: ignore[attr-defined]
        projects,
        gateway,
        notifier,
        SessionLocal,
    )
    app.payment_sync = PaymentSyncService(projects, reconciliation_queue)  # type: ignore[attr-defined]
    app.payment_sync_scheduler = None  # type: ignore[attr-defined]
    if settings.payment_sync_enabled:
        _start_payment_sync(app, app.payment_sync)  # type: ignore[attr-defined]

    @app.teardown_appcontext
    def remove_session(exception: Exception | None) -> None:
        SessionLocal.remove()

    @app.before_request
    def inject_correlation_id() -> None:
        corr_id = request.headers.get("X-Correlation-ID", str(uuid.uuid4()))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(correlation_id=corr_id)
        g.correlation_id = corr_id
        g.start_time = time.time()

    @app.after_request
    def add_response_headers(response):
        duration = time.time() - getattr(g, "start_time", time.time())
        response.headers["X-Correlation-ID"] = getattr(g, "correlation_id", "")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        if request.is_secure:
            response.headers.setdefault(
                "Strict-Transport-Security",
                "max-age=31536000; includeSubDomains; preload",
            )
        LOGGER.info(
            "request_completed",
            path=request.path,
            status=response.status_code,
            method=request.method,
            duration=duration,
        )
        return response

    @app.route("/metrics")
    def metrics():
        try:
            backlog = app.reconciliation_queue.backlog()  # type: ignore[attr-defined]
        except Exception as exc:
            LOGGER.warning("queue_backlog_unavailable", error=str(exc))
            backlog = {}
        for label, size in backlog.items():
            queue_gauge.labels(queue=label).set(size)
        return app.response_class(generate_latest(), mimetype=CONTENT_TYPE_LATEST)

    app.register_blueprint(health_bp)
    app.register_blueprint(webhook_bp)
    app.register_blueprint(checkout_bp)

    return app


@contextmanager
def get_db_session(app: Flask) -> Generator:
    session = app.db_session()  # type: ignore[attr-defined]
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = ["configure_logging", "get_db_session", "init_app"]
