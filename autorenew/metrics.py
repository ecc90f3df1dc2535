from prometheus_client import Counter, Histogram

CHARGE_OUTCOMES = Counter(
    "billing_charge_outcomes_total",
    "Recurring charge attempts by synchronous outcome",
    ["outcome"],
)
WEBHOOK_OUTCOMES = Counter(
    "billing_webhook_outcomes_total",
    "Gateway webhook events by reconciliation outcome",
    ["outcome"],
)
NOTIFICATIONS = Counter(
    "billing_notifications_total",
    "Notification gate decisions",
    ["result"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
