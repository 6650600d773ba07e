"""
Prometheus metrics for the ingestion pipeline and its workers
"""

from prometheus_client import Counter, Histogram, Info, start_http_server
import logging

logger = logging.getLogger(__name__)

# Event ingestion metrics
EVENT_BATCHES_INGESTED = Counter(
    "event_batches_ingested_total",
    "Total event batches received from the parser service",
    ["event_type", "status"],  # success, duplicate, rejected, failed
)

EVENTS_INGESTED = Counter(
    "events_ingested_total",
    "Total event rows persisted",
    ["event_type"],  # gunfight, grenade, damage, round
)

EVENT_BATCH_DURATION = Histogram(
    "event_batch_duration_seconds",
    "Time to validate and persist an event batch",
    ["event_type"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 2, 5, 10],
)

# Job lifecycle metrics
JOB_TRANSITIONS = Counter(
    "processing_job_transitions_total",
    "Processing job status transitions",
    ["status"],  # pending, processing, completed, failed, ignored
)

# Parser service metrics
PARSER_REQUESTS = Counter(
    "parser_service_requests_total",
    "Total requests sent to the demo parser service",
    ["endpoint", "status"],  # success, failed
)

PARSER_UPLOAD_DURATION = Histogram(
    "parser_upload_duration_seconds",
    "Time to upload a demo file to the parser service",
    buckets=[1, 5, 10, 30, 60, 120, 300],
)

# Aggregation metrics
AGGREGATIONS_PROCESSED = Counter(
    "match_aggregations_processed_total",
    "Total match aggregations",
    ["status"],  # success, failed, skipped
)

AGGREGATION_DURATION = Histogram(
    "match_aggregation_duration_seconds",
    "Time to aggregate a match",
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60],
)

# Leaderboard metrics
LEADERBOARD_RUNS = Counter(
    "leaderboard_runs_total",
    "Leaderboard snapshot calculations",
    ["leaderboard_type", "time_window", "status"],
)

LEADERBOARD_RUN_DURATION = Histogram(
    "leaderboard_run_duration_seconds",
    "Time to recompute all leaderboards",
    buckets=[1, 5, 10, 30, 60, 120, 300, 600],
)

# Queue metrics
QUEUE_MESSAGES_PROCESSED = Counter(
    "queue_messages_processed_total",
    "Total messages processed from queue",
    ["queue_name", "status"],  # success, failed, retried
)

QUEUE_PROCESSING_DURATION = Histogram(
    "queue_processing_duration_seconds",
    "Time to process a message from queue",
    ["queue_name"],
    buckets=[0.1, 0.5, 1, 5, 10, 30, 60, 120, 300],
)

# Worker health and errors
WORKER_INFO = Info("worker", "Worker information")

WORKER_ERRORS = Counter("worker_errors_total", "Total worker errors", ["worker_type", "error_type"])

# Database operations
DATABASE_OPERATIONS = Counter(
    "database_operations_total",
    "Total database operations",
    ["operation", "table", "status"],  # operation: insert, update, delete; status: success, failed
)

DATABASE_OPERATION_DURATION = Histogram(
    "database_operation_duration_seconds",
    "Duration of database operations",
    ["operation", "table"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1, 5, 10, 30],
)


def start_metrics_server(port: int = 9090, worker_name: str = "unknown"):
    """
    Start the Prometheus metrics HTTP server

    Args:
        port: Port to expose metrics on
        worker_name: Name/type of the worker for logging and info metric
    """
    try:
        WORKER_INFO.info({"worker_name": worker_name, "metrics_port": str(port)})
        start_http_server(port)
        logger.info(f"Metrics server started on port {port} for worker: {worker_name}")
    except OSError as e:
        if e.errno == 98:  # Address already in use
            logger.warning(f"Metrics server port {port} already in use, skipping startup")
        else:
            logger.error(f"Failed to start metrics server on port {port}: {e}")
            raise
