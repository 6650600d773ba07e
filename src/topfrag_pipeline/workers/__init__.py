"""
Workers package for processing RabbitMQ messages.
"""

from .aggregation_worker import AggregationWorker
from .demo_upload_worker import DemoUploadService, DemoUploadWorker

__all__ = [
    "AggregationWorker",
    "DemoUploadService",
    "DemoUploadWorker",
]
