from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from graphql_tiny.api.client import ClientMetrics

_LATENCY_BUCKETS_MS = (25, 50, 100, 250, 500, 1000, 2000, 5000)


def summarize_http_metrics(metrics: ClientMetrics) -> dict[str, Any]:
    requests_total = sum(metrics.http_requests_total.values())
    retries_total = sum(metrics.http_retries_total.values())
    requests_by_status: dict[str, int] = {}
    retries_by_reason: dict[str, int] = {}
    errors_total = 0
    for (_endpoint, status), count in metrics.http_requests_total.items():
        requests_by_status[status] = requests_by_status.get(status, 0) + count
        try:
            status_code = int(status)
        except (TypeError, ValueError):
            # Transport failures are recorded by category name
            errors_total += count
        else:
            if status_code != 200:
                errors_total += count

    for (_endpoint, reason), count in metrics.http_retries_total.items():
        retries_by_reason[reason] = retries_by_reason.get(reason, 0) + count

    http_5xx_total = 0
    for status, count in requests_by_status.items():
        try:
            status_code = int(status)
        except (TypeError, ValueError):
            continue
        if 500 <= status_code <= 599:
            http_5xx_total += count

    latencies = [value for values in metrics.http_latency_ms.values() for value in values]
    buckets: dict[str, int] = {}
    for bound in _LATENCY_BUCKETS_MS:
        buckets[str(bound)] = sum(1 for value in latencies if value <= bound)
    buckets["+inf"] = len(latencies)

    return {
        "requests_total": requests_total,
        "errors_total": errors_total,
        "retries_total": retries_total,
        "requests_by_status": requests_by_status,
        "retries_by_reason": retries_by_reason,
        "http_429_total": requests_by_status.get("429", 0),
        "http_5xx_total": http_5xx_total,
        "rate_limited_total": retries_by_reason.get("rate_limited", 0),
        "rate_limit_wait_s": round(metrics.rate_limit_wait_s, 3),
        "latency_ms": {
            "count": len(latencies),
            "min": min(latencies) if latencies else None,
            "max": max(latencies) if latencies else None,
            "buckets": buckets,
        },
    }


def write_http_metrics(metrics_path: Path, metrics: ClientMetrics) -> None:
    payload = summarize_http_metrics(metrics)
    metrics_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
