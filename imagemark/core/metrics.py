"""
Prometheus Metrics for Observability

Tracks pipeline stage latency, task outcomes and uploads.
Exposes /metrics endpoint for Prometheus scraping.
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
    "Time spent in each pipeline stage",
    labelnames=["stage", "status"],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

# Queue directives returned by the task processor
image_tasks_total = Counter(
    "image_tasks_total",
    "Image tasks handled by the worker, by queue directive",
    labelnames=["directive"]
)

# Upload path
batches_created_total = Counter(
    "batches_created_total",
    "Batch create requests",
    labelnames=["status"]
)

images_uploaded_total = Counter(
    "images_uploaded_total",
    "Files seen by the batch upload endpoint",
    labelnames=["status"]
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
    "imagemark_app",
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
        with track_stage_latency("composite"):
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


def record_task_directive(directive: str):
    """Record the queue directive chosen for a task."""
    image_tasks_total.labels(directive=directive).inc()


def record_batch_created(status: str):
    """Record a batch create outcome (created, rejected)."""
    batches_created_total.labels(status=status).inc()


def record_image_upload(status: str):
    """Record a single file outcome in a batch upload (accepted, skipped)."""
    images_uploaded_total.labels(status=status).inc()


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    """Get the content type for Prometheus metrics."""
    return CONTENT_TYPE_LATEST
