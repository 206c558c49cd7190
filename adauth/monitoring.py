"""Health and metrics data for the authentication service."""

import time
from collections import defaultdict
from typing import Any

metrics_data: dict[str, Any] = {
    "authentications_total": defaultdict(
        lambda: defaultdict(int)
    ),  # backend -> outcome -> count
    "registrations_total": defaultdict(int),  # outcome -> count
    "group_cache_total": defaultdict(int),  # hit|miss -> count
    "group_lookups_degraded_total": 0,
    "server_requests_total": defaultdict(
        lambda: defaultdict(int)
    ),  # method -> endpoint -> count
    "server_start_time": time.time(),
}


def reset_metrics() -> None:
    """Zero every counter. Useful for testing."""
    metrics_data["authentications_total"].clear()
    metrics_data["registrations_total"].clear()
    metrics_data["group_cache_total"].clear()
    metrics_data["group_lookups_degraded_total"] = 0
    metrics_data["server_requests_total"].clear()


def get_health_data(metrics_data: dict[str, Any]) -> dict[str, Any]:
    """Get server health status."""
    return {
        "status": "healthy",
        "uptime_seconds": time.time() - metrics_data["server_start_time"],
    }


def get_prometheus_metrics(metrics_data: dict[str, Any]) -> str:
    """Generate Prometheus metrics format."""
    lines = []

    lines.append("# HELP adauth_authentications_total Authentication attempts")
    lines.append("# TYPE adauth_authentications_total counter")
    for backend, outcomes in metrics_data["authentications_total"].items():
        for outcome, count in outcomes.items():
            lines.append(
                f'adauth_authentications_total{{backend="{backend}",outcome="{outcome}"}} {count}'
            )

    lines.append("# HELP adauth_registrations_total Registration attempts")
    lines.append("# TYPE adauth_registrations_total counter")
    for outcome, count in metrics_data["registrations_total"].items():
        lines.append(f'adauth_registrations_total{{outcome="{outcome}"}} {count}')

    lines.append("# HELP adauth_group_cache_total Group cache lookups")
    lines.append("# TYPE adauth_group_cache_total counter")
    for result, count in metrics_data["group_cache_total"].items():
        lines.append(f'adauth_group_cache_total{{result="{result}"}} {count}')

    lines.append(
        "# HELP adauth_group_lookups_degraded_total Group lookups that fell back to minimal groups"
    )
    lines.append("# TYPE adauth_group_lookups_degraded_total counter")
    lines.append(
        f"adauth_group_lookups_degraded_total {metrics_data['group_lookups_degraded_total']}"
    )

    lines.append("# HELP adauth_server_requests_total Total number of HTTP requests")
    lines.append("# TYPE adauth_server_requests_total counter")
    for method, endpoints in metrics_data["server_requests_total"].items():
        for endpoint, count in endpoints.items():
            lines.append(
                f'adauth_server_requests_total{{method="{method}",endpoint="{endpoint}"}} {count}'
            )

    return "\n".join(lines) + "\n"
