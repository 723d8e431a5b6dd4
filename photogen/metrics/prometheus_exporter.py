"""Prometheus exporter helpers."""

from __future__ import annotations

from prometheus_client import Counter, Gauge


generation_submissions_total = Counter(
    "generation_submissions_total",
    "Total number of accepted generation submissions.",
)

task_terminal_transitions_total = Counter(
    "task_terminal_transitions_total",
    "Terminal writes that won the conditional update, by status.",
    ["status"],
)

credit_refunds_total = Counter(
    "credit_refunds_total",
    "Refunds applied to user balances.",
)

dispatch_failures_total = Counter(
    "dispatch_failures_total",
    "Dispatch call failures, by classification.",
    ["classification"],
)

watchdog_fired_total = Counter(
    "watchdog_fired_total",
    "Number of times the worker watchdog fired before the pipeline finished.",
)

upload_attempts_total = Counter(
    "upload_attempts_total",
    "Individual artifact upload attempts, by outcome.",
    ["outcome"],
)

uploads_in_flight = Gauge(
    "uploads_in_flight",
    "Artifact uploads currently running.",
)
