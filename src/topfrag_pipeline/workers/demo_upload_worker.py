"""
Demo Upload Worker

Accepts demo uploads, creates the processing job and hands the demo to the
external parser service. Submission and upload are split across the
demo.upload queue so a slow parser never blocks the caller.
"""

import logging
import time
from typing import Any, Dict, Optional

from ..core.parser_client import (
    ConfigurationError,
    ParserServiceClient,
    ServiceUnavailableError,
    UploadFailedError,
)
from ..core.rabbitmq_publisher import DEMO_UPLOAD_QUEUE, RabbitMQError, RabbitMQPublisher
from ..metrics import QUEUE_MESSAGES_PROCESSED, QUEUE_PROCESSING_DURATION, WORKER_ERRORS, start_metrics_server
from ..services.job_tracker import JobTracker


class DemoUploadService:
    """
    Creates a job for a demo and queues it for upload.

    Example:
        >>> service = DemoUploadService(JobTracker(db), publisher)
        >>> service.submit_demo("/data/demos/match.dem")
        '0b9f6c0e-...'
    """

    def __init__(
        self,
        job_tracker: JobTracker,
        rabbitmq_publisher: RabbitMQPublisher,
        logger: Optional[logging.Logger] = None,
    ):
        self.job_tracker = job_tracker
        self.rabbitmq_publisher = rabbitmq_publisher
        self.logger = logger or logging.getLogger(__name__)

    def submit_demo(self, file_path: str, priority: str = "default") -> str:
        """
        Create a pending job and enqueue its upload.

        Args:
            file_path: Path to the .dem file, readable by the upload workers
            priority: "default" or "high" (reprocessing)

        Returns:
            The job UUID

        Raises:
            RabbitMQError: If the upload task could not be queued (the job is failed)
        """
        job_id = self.job_tracker.create_job()

        published = self.rabbitmq_publisher.submit(
            {"job_id": job_id, "file_path": file_path}, DEMO_UPLOAD_QUEUE, priority=priority
        )
        if not published:
            self.job_tracker.fail_job(job_id, "Failed to queue demo for upload")
            raise RabbitMQError(f"Failed to queue demo upload for job {job_id}")

        self.logger.info(f"Queued demo {file_path} for job {job_id} ({priority} priority)")
        return job_id


class DemoUploadWorker:
    """
    Worker that uploads queued demos to the parser service.

    Responsibilities:
    - Check the parser service is healthy
    - Upload the demo with the job's callback URLs
    - Fail the job when the parser can't take the demo
    """

    def __init__(
        self,
        parser_client: ParserServiceClient,
        job_tracker: JobTracker,
        worker_id: str,
        logger: Optional[logging.Logger] = None,
        metrics_port: int = 9092,
    ):
        """
        Initialize demo upload worker.

        Args:
            parser_client: Parser service client
            job_tracker: Job tracker used to fail jobs
            worker_id: Unique worker identifier
            logger: Optional logger instance
            metrics_port: Port to expose Prometheus metrics on (default: 9092)
        """
        self.parser_client = parser_client
        self.job_tracker = job_tracker
        self.worker_id = worker_id
        self.logger = logger or logging.getLogger(__name__)

        self.uploaded_count = 0
        self.failed_count = 0

        start_metrics_server(port=metrics_port, worker_name=f"demo-upload-{worker_id}")

        self.logger.info(f"[{self.worker_id}] Demo upload worker initialized")

    def process_message(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Upload one demo (callback for RabbitMQConsumer).

        Args:
            data: {"job_id": str, "file_path": str}

        Returns:
            {"success": bool, "error": str}

        Raises:
            Exception: Unexpected errors are re-raised so the consumer retries
        """
        start_time = time.time()
        job_id = data.get("job_id")
        file_path = data.get("file_path")

        if not job_id or not file_path:
            error_msg = "Message missing job_id or file_path field"
            self.logger.error(f"[{self.worker_id}] {error_msg}")
            self.failed_count += 1
            QUEUE_MESSAGES_PROCESSED.labels(queue_name="demo_upload", status="failed").inc()
            return {"success": False, "error": error_msg}

        self.logger.info(f"[{self.worker_id}] Uploading demo {file_path} for job {job_id}")

        try:
            self.parser_client.check_health()
            response = self.parser_client.upload_demo(file_path, job_id)

        except (ConfigurationError, ServiceUnavailableError) as e:
            return self._fail(job_id, str(e), e)

        except UploadFailedError as e:
            return self._fail(job_id, f"{e} (upstream status {e.status_code})", e)

        except Exception as e:
            self.logger.error(
                f"[{self.worker_id}] Unexpected error uploading demo for job {job_id}: {e}",
                exc_info=True,
            )
            WORKER_ERRORS.labels(worker_type="demo_upload", error_type=type(e).__name__).inc()
            raise

        finally:
            QUEUE_PROCESSING_DURATION.labels(queue_name="demo_upload").observe(
                time.time() - start_time
            )

        self.uploaded_count += 1
        QUEUE_MESSAGES_PROCESSED.labels(queue_name="demo_upload", status="success").inc()
        self.logger.info(
            f"[{self.worker_id}] Demo for job {job_id} accepted by parser service: {response}"
        )
        return {"success": True, "job_id": job_id}

    def _fail(self, job_id: str, error_msg: str, error: Exception) -> Dict[str, Any]:
        self.logger.error(f"[{self.worker_id}] Upload for job {job_id} failed: {error_msg}")
        self.job_tracker.fail_job(job_id, error_msg)
        self.failed_count += 1
        WORKER_ERRORS.labels(worker_type="demo_upload", error_type=type(error).__name__).inc()
        QUEUE_MESSAGES_PROCESSED.labels(queue_name="demo_upload", status="failed").inc()
        return {"success": False, "error": error_msg}

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics."""
        return {
            "worker_id": self.worker_id,
            "uploaded_count": self.uploaded_count,
            "failed_count": self.failed_count,
        }


def main():
    import os
    import sys

    from ..core.database_manager import DatabaseManager
    from ..core.rabbitmq_consumer import RabbitMQConsumer

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    db_manager = DatabaseManager.from_env(os.environ)

    worker = DemoUploadWorker(
        parser_client=ParserServiceClient.from_env(),
        job_tracker=JobTracker(db_manager),
        worker_id=os.getenv("WORKER_ID", "demo-upload-worker-1"),
        metrics_port=int(os.getenv("METRICS_PORT", "9092")),
    )

    consumer = RabbitMQConsumer(
        host=os.getenv("RABBITMQ_HOST"),
        port=int(os.getenv("RABBITMQ_PORT", "5672")),
        username=os.getenv("RABBITMQ_USER", "guest"),
        password=os.getenv("RABBITMQ_PASSWORD", "guest"),
        vhost=os.getenv("RABBITMQ_VHOST", "/"),
        environment=os.getenv("ENVIRONMENT", "prod"),
    )

    print(f"Starting demo upload worker: {worker.worker_id}")
    try:
        consumer.consume(DEMO_UPLOAD_QUEUE, worker.process_message)
    except KeyboardInterrupt:
        print("\nShutting down...")
        consumer.close()
        db_manager.disconnect()
        sys.exit(0)


if __name__ == "__main__":
    main()
