"""
Prometheus metrics for the payment verification engine.

Tracks:
- Receipt verification outcomes and confidence
- OCR extraction latency and failures
- Payment lifecycle transitions and compare-and-swap conflicts
- Reference generation collisions
- Job completions, retries and permanent failures per queue
"""
from prometheus_client import Counter, Gauge, Histogram

# Receipt verification metrics
receipt_verifications_total = Counter(
    "receipt_verifications_total",
    "Total receipt verifications",
    ["outcome"],  # verified, rejected, empty
)

receipt_verification_confidence = Histogram(
    "receipt_verification_confidence",
    "Receipt verification confidence score",
    buckets=(0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100),
)

# Extraction metrics
ocr_extraction_duration_seconds = Histogram(
    "ocr_extraction_duration_seconds",
    "OCR extraction duration in seconds",
    ["provider"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

ocr_extraction_errors_total = Counter(
    "ocr_extraction_errors_total",
    "Total OCR extraction failures",
    ["provider"],
)

# Lifecycle metrics
payment_transitions_total = Counter(
    "payment_transitions_total",
    "Total payment status transitions",
    ["from_status", "to_status"],
)

payment_stale_state_total = Counter(
    "payment_stale_state_total",
    "Total compare-and-swap updates that lost a race",
    ["to_status"],
)

payment_verification_rejections_total = Counter(
    "payment_verification_rejections_total",
    "Total payment verification requests rejected",
    ["reason"],
)

payment_reference_collisions_total = Counter(
    "payment_reference_collisions_total",
    "Total payment reference candidates that collided",
)

# Job metrics
jobs_completed_total = Counter(
    "jobs_completed_total",
    "Total jobs completed",
    ["queue"],
)

jobs_retried_total = Counter(
    "jobs_retried_total",
    "Total job attempts scheduled for retry",
    ["queue"],
)

jobs_failed_total = Counter(
    "jobs_failed_total",
    "Total jobs failed permanently",
    ["queue"],
)

job_duration_seconds = Histogram(
    "job_duration_seconds",
    "Job attempt duration in seconds",
    ["queue"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

queue_depth = Gauge(
    "queue_depth",
    "Number of jobs waiting or delayed",
    ["queue"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_receipt_verification(outcome: str, confidence: int) -> None:
        """Record a receipt verification verdict."""
        receipt_verifications_total.labels(outcome=outcome).inc()
        receipt_verification_confidence.observe(confidence)

    @staticmethod
    def record_extraction(provider: str, duration_seconds: float) -> None:
        """Record a successful OCR extraction."""
        ocr_extraction_duration_seconds.labels(provider=provider).observe(duration_seconds)

    @staticmethod
    def record_extraction_error(provider: str) -> None:
        """Record an OCR extraction failure."""
        ocr_extraction_errors_total.labels(provider=provider).inc()

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record a payment status transition."""
        payment_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_stale_state(to_status: str) -> None:
        """Record a lost compare-and-swap."""
        payment_stale_state_total.labels(to_status=to_status).inc()

    @staticmethod
    def record_verification_rejection(reason: str) -> None:
        """Record a rejected verification request."""
        payment_verification_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_reference_collision() -> None:
        """Record a colliding reference candidate."""
        payment_reference_collisions_total.inc()

    @staticmethod
    def record_job_completed(queue: str, duration_seconds: float) -> None:
        """Record job completion."""
        jobs_completed_total.labels(queue=queue).inc()
        job_duration_seconds.labels(queue=queue).observe(duration_seconds)

    @staticmethod
    def record_job_retry(queue: str, duration_seconds: float) -> None:
        """Record a failed attempt that will be retried."""
        jobs_retried_total.labels(queue=queue).inc()
        job_duration_seconds.labels(queue=queue).observe(duration_seconds)

    @staticmethod
    def record_job_failed(queue: str) -> None:
        """Record permanent job failure."""
        jobs_failed_total.labels(queue=queue).inc()

    @staticmethod
    def set_queue_depth(queue: str, depth: int) -> None:
        """Set queue depth."""
        queue_depth.labels(queue=queue).set(depth)


# Export singleton instance
metrics = MetricsCollector()
