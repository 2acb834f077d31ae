"""Prometheus metrics for the upload and processing pipeline."""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# Multiprocess mode (e.g. several uvicorn/gunicorn workers)
if "PROMETHEUS_MULTIPROC_DIR" in os.environ or "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


APP_INFO = Info(
    "media_pipeline_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_PROGRESS = Gauge(
    "http_requests_in_progress",
    "Number of HTTP requests currently in progress",
    ["method", "endpoint"],
    registry=REGISTRY,
)


# ============================================
# Upload Metrics
# ============================================
UPLOAD_SESSIONS_TOTAL = Counter(
    "upload_sessions_total",
    "Upload sessions by outcome",
    ["outcome"],
    registry=REGISTRY,
)

UPLOAD_CHUNKS_TOTAL = Counter(
    "upload_chunks_total",
    "Chunk submissions by outcome",
    ["outcome"],
    registry=REGISTRY,
)

UPLOAD_BYTES_RECEIVED = Counter(
    "upload_bytes_received_total",
    "Bytes accepted into chunk storage",
    registry=REGISTRY,
)


# ============================================
# Processing Metrics
# ============================================
TRANSCODE_JOBS_TOTAL = Counter(
    "transcode_jobs_total",
    "Transcoding jobs by kind and outcome",
    ["job_kind", "outcome"],
    registry=REGISTRY,
)

TRANSCODE_JOB_DURATION_SECONDS = Histogram(
    "transcode_job_duration_seconds",
    "Transcoding job duration in seconds",
    ["job_kind"],
    buckets=[1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0],
    registry=REGISTRY,
)

QUEUE_DEPTH = Gauge(
    "transcode_queue_depth",
    "Number of jobs waiting in the transcode queue",
    registry=REGISTRY,
)

WORKERS_BUSY = Gauge(
    "transcode_workers_busy",
    "Number of workers currently running a job",
    registry=REGISTRY,
)

PUBLISH_FAILURES_TOTAL = Counter(
    "artifact_publish_failures_total",
    "Artifact uploads to durable storage that failed",
    registry=REGISTRY,
)


# ============================================
# Garbage Collection Metrics
# ============================================
GC_ACTIONS_TOTAL = Counter(
    "gc_actions_total",
    "Deletions and transitions performed by the garbage collector",
    ["sweep"],
    registry=REGISTRY,
)

GC_ERRORS_TOTAL = Counter(
    "gc_errors_total",
    "Errors recorded by the garbage collector",
    ["sweep"],
    registry=REGISTRY,
)

GC_LAST_RUN_TIMESTAMP = Gauge(
    "gc_last_run_timestamp",
    "Unix timestamp of the last completed garbage collection run",
    registry=REGISTRY,
)


def get_metrics() -> bytes:
    """Generate latest metrics in Prometheus format."""
    return generate_latest(REGISTRY)


def get_content_type() -> str:
    return CONTENT_TYPE_LATEST


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({
        "version": version,
        "environment": environment,
    })
