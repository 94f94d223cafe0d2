from __future__ import annotations

import argparse
from collections.abc import Iterable

import redis
import structlog
from rq import Worker

from portal import init_app
from portal.config import settings
from portal.services.jobs import requeue_dead_letter_job

LOGGER = structlog.get_logger(__name__).bind(component="rq_worker")


def _ensure_unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value and value not in seen:
            ordered.append(value)
            seen.add(value)
    return ordered


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Start a portal RQ worker")
    parser.add_argument(
        "--queue",
        "-q",
        action="append",
        dest="queues",
        help="Fila(s) que o worker deve processar (pode ser usado várias vezes)",
    )
    parser.add_argument(
        "--burst",
        action="store_true",
        help="Processa jobs disponíveis e encerra",
    )
    parser.add_argument(
        "--requeue-dead-letter",
        action="append",
        dest="requeue_job_ids",
        metavar="JOB_ID",
        help="Reenvia o job de dead-letter informado para a fila principal e encerra",
    )
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    redis_conn = redis.from_url(settings.redis_url)

    if args.requeue_job_ids:
        for job_id in args.requeue_job_ids:
            requeued = requeue_dead_letter_job(redis_conn, job_id)
            LOGGER.info("dead_letter_requeue", job_id=job_id, requeued=requeued)
        return

    app = init_app()
    queue_names = _ensure_unique(
        [*(args.queues or []), settings.queue_name, settings.dead_letter_queue_name]
    )
    LOGGER.info("worker_starting", queues=queue_names)

    with app.app_context():
        worker = Worker(queue_names, connection=redis_conn)
        worker.work(burst=args.burst)


if __name__ == "__main__":
    main()
