from __future__ import annotations

import argparse
import asyncio
import hashlib
import hmac
import json
import logging
import os
import time
import uuid
from collections import Counter as StatusCounter
from dataclasses import dataclass
from statistics import mean

import aiohttp
from prometheus_client import CollectorRegistry, Counter, Gauge, generate_latest

LOGGER = logging.getLogger("load_test")


@dataclass
class DeliveryResult:
    status: int | None
    latency: float
    error: str | None = None


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Dispara entregas duplicadas e concorrentes do webhook do Mercado Pago."
    )
    parser.add_argument(
        "--url",
        default="http://localhost:5005/api/webhooks/mercadopago",
        help="Endpoint do webhook alvo",
    )
    parser.add_argument("--payment-id", required=True, help="ID do pagamento a ser notificado repetidamente")
    parser.add_argument(
        "--secret",
        default=os.getenv("MERCADO_PAGO_WEBHOOK_SECRET"),
        help="Segredo usado para assinar o header x-signature",
    )
    parser.add_argument("--deliveries", type=int, default=20, help="Número total de entregas")
    parser.add_argument("--concurrency", type=int, default=20, help="Entregas simultâneas")
    parser.add_argument("--request-timeout", type=float, default=15.0, help="Timeout por requisição (segundos)")
    args = parser.parse_args()
    if args.deliveries <= 0:
        raise SystemExit("--deliveries deve ser maior que zero")
    if args.concurrency <= 0:
        raise SystemExit("--concurrency deve ser maior que zero")
    return args


def _build_headers(secret: str | None, payment_id: str) -> dict[str, str]:
    request_id = str(uuid.uuid4())
    ts = str(int(time.time()))
    digest = "unsigned"
    if secret:
        manifest = f"id:{payment_id.lower()};request-id:{request_id};ts:{ts};"
        digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return {
        "Content-Type": "application/json",
        "x-request-id": request_id,
        "x-signature": f"ts={ts},v1={digest}",
    }


async def _deliver(
    session: aiohttp.ClientSession,
    url: str,
    payment_id: str,
    secret: str | None,
    semaphore: asyncio.Semaphore,
) -> DeliveryResult:
    body = json.dumps(
        {"action": "payment.updated", "type": "payment", "data": {"id": payment_id}},
        separators=(",", ":"),
    ).encode("utf-8")
    headers = _build_headers(secret, payment_id)
    start = time.perf_counter()
    async with semaphore:
        try:
            async with session.post(url, data=body, headers=headers) as response:
                await response.text()
                return DeliveryResult(status=response.status, latency=time.perf_counter() - start)
        except Exception as exc:  # pragma: no cover - depende do ambiente
            return DeliveryResult(status=None, latency=time.perf_counter() - start, error=str(exc))


async def run_load_test(args: argparse.Namespace) -> list[DeliveryResult]:
    connector = aiohttp.TCPConnector(limit=args.concurrency)
    timeout = aiohttp.ClientTimeout(total=args.request_timeout)
    semaphore = asyncio.Semaphore(args.concurrency)
    async with aiohttp.ClientSession(connector=connector, timeout=timeout) as session:
        tasks = [
            asyncio.create_task(_deliver(session, args.url, args.payment_id, args.secret, semaphore))
            for _ in range(args.deliveries)
        ]
        return [await task for task in asyncio.as_completed(tasks)]


def _collect_metrics(results: list[DeliveryResult], total_duration: float) -> CollectorRegistry:
    accepted = [result.latency for result in results if result.status == 200]
    registry = CollectorRegistry()
    Gauge(
        "webhook_load_test_average_latency_seconds",
        "Latência média das entregas aceitas",
        registry=registry,
    ).set(mean(accepted) if accepted else 0.0)
    Gauge(
        "webhook_load_test_duration_seconds",
        "Tempo total do teste",
        registry=registry,
    ).set(total_duration)
    Counter(
        "webhook_load_test_deliveries_total",
        "Total de entregas disparadas",
        registry=registry,
    ).inc(len(results))
    Counter(
        "webhook_load_test_http_errors_total",
        "Entregas recusadas ou com falha",
        registry=registry,
    ).inc(len(results) - len(accepted))
    return registry


async def main_async() -> None:
    args = _parse_args()
    start = time.perf_counter()
    results = await run_load_test(args)
    duration = time.perf_counter() - start
    statuses = StatusCounter(result.status for result in results)
    LOGGER.info(
        "Teste concluído | entregas=%d status=%s duração=%.3fs",
        len(results),
        dict(statuses),
        duration,
    )
    LOGGER.info(
        "Confira que o projeto recebeu exatamente uma leva de tarefas para o pagamento %s",
        args.payment_id,
    )
    metrics_blob = generate_latest(_collect_metrics(results, duration)).decode("utf-8")
    LOGGER.info("Prometheus payload:\n%s", metrics_blob.strip())


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    try:
        asyncio.run(main_async())
    except KeyboardInterrupt:  # pragma: no cover - interrupção manual
        LOGGER.warning("Execução interrompida pelo usuário")


if __name__ == "__main__":
    main()
