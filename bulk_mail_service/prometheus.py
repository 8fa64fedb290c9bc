"""Prometheus metrics exposed by the bulk mail service."""

from prometheus_client import Counter, Gauge, CollectorRegistry, generate_latest


class MailMetrics:
    """Wrapper around the Prometheus registry used by the service."""

    def __init__(self, registry: CollectorRegistry | None = None):
        """Create counters and gauges inside the provided registry."""
        self.registry = registry or CollectorRegistry()
        self.sent = Counter("bms_sent_total", "Recipients accepted by the transport", registry=self.registry)
        self.failed = Counter("bms_failed_total", "Recipients whose send failed", registry=self.registry)
        self.opened = Counter("bms_opened_total", "Delivery records marked delivered by the pixel", registry=self.registry)
        self.jobs = Counter(
            "bms_jobs_total", "Scheduled job transitions", ["outcome"], registry=self.registry
        )
        self.scheduled = Gauge("bms_scheduled_jobs", "Jobs waiting for promotion", registry=self.registry)

    def inc_sent(self):
        self.sent.inc()

    def inc_failed(self):
        self.failed.inc()

    def inc_opened(self):
        self.opened.inc()

    def inc_job(self, outcome: str):
        """Count a job event (``scheduled``, ``promoted``, ``cancelled``, ``failed``)."""
        self.jobs.labels(outcome=outcome).inc()

    def set_scheduled(self, value: int):
        """Update the gauge tracking waiting jobs."""
        self.scheduled.set(value)

    def generate_latest(self) -> bytes:
        """Return the latest metrics snapshot in Prometheus text format."""
        return generate_latest(self.registry)
