from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

from portal.config import settings

webhook_received_counter = Counter(
    f"{settings.metrics_namespace}_webhook_received_total",
    "Total de webhooks de pagamento recebidos",
    ["status"],
)

webhook_latency_seconds = Histogram(
    f"{settings.metrics_namespace}_webhook_latency_seconds",
    "Tempo de resposta do endpoint de webhook",
)

reconciliation_outcomes_total = Counter(
    f"{settings.metrics_namespace}_reconciliation_outcomes_total",
    "Resultados das reconciliações de pagamento",
    ["outcome"],
)

reconciliation_latency_seconds = Histogram(
    f"{settings.metrics_namespace}_reconciliation_latency_seconds",
    "Latência do processamento de uma reconciliação",
)

project_transitions_total = Counter(
    f"{settings.metrics_namespace}_project_transitions_total",
    "Transições de status de projeto",
    ["from_status", "to_status"],
)

gateway_latency = Histogram(
    f"{settings.metrics_namespace}_gateway_latency_seconds",
    "Latência das chamadas ao gateway de pagamento",
    ["operation"],
)

gateway_errors = Counter(
    f"{settings.metrics_namespace}_gateway_errors_total",
    "Falhas nas chamadas ao gateway de pagamento",
    ["operation", "retryable"],
)

fanout_failures_total = Counter(
    f"{settings.metrics_namespace}_fanout_failures_total",
    "Falhas em efeitos colaterais (notificações, tarefas)",
    ["kind"],
)

checkout_payments_total = Counter(
    f"{settings.metrics_namespace}_checkout_payments_total",
    "Tentativas de criação de pagamento PIX",
    ["plan", "outcome"],
)

queue_gauge = Gauge(
    f"{settings.metrics_namespace}_queue_size",
    "Tamanho atual da fila RQ",
    ["queue"],
)

healthcheck_failures_total = Counter(
    f"{settings.metrics_namespace}_healthcheck_failures_total",
    "Total de falhas de healthcheck por dependência",
    ["component"],
)

__all__ = [
    "webhook_received_counter",
    "webhook_latency_seconds",
    "reconciliation_outcomes_total",
    "reconciliation_latency_seconds",
    "project_transitions_total",
    "gateway_latency",
    "gateway_errors",
    "fanout_failures_total",
    "checkout_payments_total",
    "queue_gauge",
    "healthcheck_failures_total",
]
