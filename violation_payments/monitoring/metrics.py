"""
Prometheus metrics for violation payment reconciliation.

Tracks:
- Payment attempts by gateway and outcome
- Gateway call duration and errors
- Late penalties applied
- Which resolution strategy located a violation
- Concurrency conflicts on the violation row
"""
from prometheus_client import Counter, Histogram

payment_attempts_total = Counter(
    "violation_payment_attempts_total",
    "Total payment attempts by terminal or intermediate outcome",
    ["gateway", "outcome"],  # completed, pending, failed, already_settled
)

payment_amount = Histogram(
    "violation_payment_amount",
    "Charged amounts in major currency units",
    buckets=(100, 250, 500, 1000, 2000, 5000, 10000, 20000, 50000),
)

gateway_requests_total = Counter(
    "violation_gateway_requests_total",
    "Total outbound gateway requests",
    ["gateway", "operation", "status"],  # operation: create, verify
)

gateway_request_duration_seconds = Histogram(
    "violation_gateway_request_duration_seconds",
    "Outbound gateway call duration in seconds",
    ["gateway", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

late_penalties_applied_total = Counter(
    "violation_late_penalties_applied_total",
    "Late penalties written onto violations",
)

resolution_strategy_hits_total = Counter(
    "violation_resolution_strategy_hits_total",
    "Violations located, by resolution strategy",
    ["strategy"],
)

resolution_failures_total = Counter(
    "violation_resolution_failures_total",
    "Requests whose violation could not be resolved",
)

concurrency_conflicts_total = Counter(
    "violation_concurrency_conflicts_total",
    "Optimistic lock conflicts on violation or payment rows",
    ["operation"],
)
