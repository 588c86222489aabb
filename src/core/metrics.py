"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, job outcomes, imagery provider calls and
coordinate submissions. Exposes /api/v1/metrics for Prometheus scraping.
"""

import time
from contextlib import contextmanager

from prometheus_client import (
    Counter,
    Histogram,
    Info,
    generate_latest,
    CONTENT_TYPE_LATEST,
    REGISTRY
)

# =============================================================================
# Metrics Definitions
# =============================================================================

# Pipeline Latency - Per Stage
pipeline_latency_seconds = Histogram(
    "pipeline_latency_seconds",
    "Time spent in each acquisition pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0]
)

# Jobs Counter
fetch_jobs_total = Counter(
    "fetch_jobs_total",
    "Fetch jobs by final outcome",
    labelnames=["status"]
)

# Imagery Provider Calls
provider_calls_total = Counter(
    "imagery_provider_calls_total",
    "Calls made to the imagery auth and process APIs",
    labelnames=["endpoint", "status", "http_status"]
)

# Coordinate Submissions
coordinate_submissions_total = Counter(
    "coordinate_submissions_total",
    "Coordinate submissions by outcome",
    labelnames=["outcome"]  # created, exists, rejected, enqueue_failed
)

# API Request Metrics
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status"]
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration",
    labelnames=["method", "endpoint"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Application Info
app_info = Info(
    "farm_imagery_app",
    "Application information"
)


# =============================================================================
# Helper Functions
# =============================================================================

def set_app_info(version: str, environment: str):
    """Set application info metric."""
    app_info.info({
        "version": version,
        "environment": environment
    })


@contextmanager
def track_stage_latency(stage: str):
    """
    Context manager to track stage latency.

    Usage:
        with track_stage_latency("fetch_image"):
            # do work
    """
    start = time.time()
    status = "success"
    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.time() - start
        pipeline_latency_seconds.labels(stage=stage, status=status).observe(duration)


def record_provider_call(endpoint: str, status: str, http_status: int = 0):
    """Record a Sentinel Hub API call."""
    provider_calls_total.labels(
        endpoint=endpoint,
        status=status,
        http_status=str(http_status)
    ).inc()


def record_job_completion(status: str):
    """Record a fetch job reaching its final outcome."""
    fetch_jobs_total.labels(status=status).inc()


def record_submission(outcome: str):
    """Record a coordinate submission outcome."""
    coordinate_submissions_total.labels(outcome=outcome).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
