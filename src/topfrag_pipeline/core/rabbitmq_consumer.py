"""RabbitMQ Consumer - work queue consumption with bounded retries.

This module provides the consume side of the pipeline's work queue.

Key features:
- Event-driven message consumption
- Callback contract shared by all workers ({"success": bool, "error": str})
- Manual acknowledgment with republish-based retry (x-retry-count header)
- Prefetch control for concurrency
- Graceful shutdown
"""

import json
import logging
import time
from typing import Any, Callable, Dict, Optional

import pika
from pika.exceptions import AMQPConnectionError

from ..metrics import QUEUE_MESSAGES_PROCESSED, QUEUE_PROCESSING_DURATION
from .rabbitmq_publisher import queue_arguments


logger = logging.getLogger(__name__)


RETRY_HEADER = "x-retry-count"


class RabbitMQConsumerError(Exception):
    """Custom exception for RabbitMQ consumer operations."""

    pass


class RabbitMQConsumer:
    """RabbitMQ consumer for pipeline workers.

    Callback contract:
        Input: Dict[str, Any] - Parsed task data
        Output: Dict[str, Any] - {"success": bool, "error": Optional[str]}

    A callback that returns success=False has failed permanently and the
    message is rejected. A callback that raises is retried by republishing
    the task with an incremented x-retry-count header until max_retries is
    reached.

    Example:
        >>> def aggregate(data: Dict[str, Any]) -> Dict[str, Any]:
        ...     return {"success": True}
        ...
        >>> consumer = RabbitMQConsumer(host="localhost", environment="prod")
        >>> consumer.consume("match.aggregate", aggregate)
    """

    def __init__(
        self,
        host: str,
        port: int = 5672,
        username: str = "guest",
        password: str = "guest",
        vhost: str = "/",
        environment: str = "prod",
        prefetch_count: int = 1,
        connection_timeout: int = 10,
        heartbeat: int = 600,
    ):
        """Initialize RabbitMQ consumer.

        Args:
            host: RabbitMQ host
            port: RabbitMQ AMQP port (default: 5672)
            username: RabbitMQ username
            password: RabbitMQ password
            vhost: RabbitMQ virtual host (default: "/")
            environment: Environment (prod, dev, etc.)
            prefetch_count: Number of messages to prefetch (default: 1)
            connection_timeout: Connection timeout in seconds
            heartbeat: Heartbeat interval in seconds
        """
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.vhost = vhost
        self.environment = environment
        self.prefetch_count = prefetch_count
        self.connection_timeout = connection_timeout
        self.heartbeat = heartbeat

        # Connection and channel (lazy initialization)
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Optional[pika.channel.Channel] = None

        # Consumption state
        self._consuming = False
        self._processed_count = 0
        self._retried_count = 0
        self._rejected_count = 0

        logger.info(
            f"RabbitMQ consumer initialized: {self.host}:{self.port} (vhost={self.vhost}, env={self.environment})"
        )

    def _build_queue_name(self, queue_name: str) -> str:
        """Build environment-aware queue name (e.g. "match.aggregate.prod")."""
        return f"{queue_name}.{self.environment}"

    def _ensure_connection(self) -> None:
        """Ensure connection and channel are established.

        Raises:
            RabbitMQConsumerError: If connection fails
        """
        if self._connection is None or self._connection.is_closed:
            try:
                credentials = pika.PlainCredentials(self.username, self.password)
                parameters = pika.ConnectionParameters(
                    host=self.host,
                    port=self.port,
                    virtual_host=self.vhost,
                    credentials=credentials,
                    connection_attempts=3,
                    retry_delay=2,
                    socket_timeout=self.connection_timeout,
                    heartbeat=self.heartbeat,
                )

                self._connection = pika.BlockingConnection(parameters)
                self._channel = self._connection.channel()

                # Set prefetch count (QoS)
                self._channel.basic_qos(prefetch_count=self.prefetch_count)

                logger.debug(f"Connected to RabbitMQ: {self.host}:{self.port}")

            except AMQPConnectionError as e:
                raise RabbitMQConsumerError(f"Failed to connect to RabbitMQ: {e}")

    def consume(
        self,
        queue_name: str,
        callback: Callable[[Dict[str, Any]], Dict[str, Any]],
        max_retries: int = 3,
    ) -> None:
        """Start consuming tasks from a work queue (daemon mode).

        Blocks indefinitely, processing tasks as they arrive.

        Args:
            queue_name: Logical queue name (e.g. "demo.upload")
            callback: Function to process each task
            max_retries: Republish attempts for a task whose callback raised

        Raises:
            RabbitMQConsumerError: If consumption fails
        """
        try:
            self._ensure_connection()

            full_queue_name = self._build_queue_name(queue_name)
            self._channel.queue_declare(
                queue=full_queue_name, durable=True, arguments=queue_arguments()
            )

            logger.info(f"Starting consumption from queue: {full_queue_name}")

            def on_message(channel, method, properties, body):
                self._on_message_callback(
                    channel, method, properties, body, callback, full_queue_name, max_retries
                )

            self._channel.basic_consume(
                queue=full_queue_name, on_message_callback=on_message, auto_ack=False
            )

            self._consuming = True

            logger.info(f"Waiting for messages from {full_queue_name}. Press Ctrl+C to exit.")
            self._channel.start_consuming()

        except KeyboardInterrupt:
            logger.info("Consumption interrupted by user")
            self.stop_consuming()
        except Exception as e:
            logger.error(f"Error during consumption: {e}")
            raise RabbitMQConsumerError(f"Consumption failed: {e}")

    def _on_message_callback(
        self,
        channel: pika.channel.Channel,
        method: pika.spec.Basic.Deliver,
        properties: pika.spec.BasicProperties,
        body: bytes,
        callback: Callable[[Dict[str, Any]], Dict[str, Any]],
        queue_name: str,
        max_retries: int,
    ) -> None:
        """Process one delivery and settle it (ack, retry or reject).

        Args:
            channel: Pika channel
            method: Delivery method
            properties: Message properties
            body: Message body (JSON bytes)
            callback: Worker callback
            queue_name: Environment-qualified queue the message came from
            max_retries: Republish attempts before the task is rejected
        """
        start_time = time.time()

        try:
            task = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.error(f"Failed to parse message JSON from {queue_name}: {e}")
            channel.basic_nack(method.delivery_tag, requeue=False)
            self._rejected_count += 1
            QUEUE_MESSAGES_PROCESSED.labels(queue_name=queue_name, status="failed").inc()
            return

        try:
            result = callback(task)
        except Exception as e:
            self._retry_or_reject(channel, method, properties, body, queue_name, max_retries, e)
            return
        finally:
            QUEUE_PROCESSING_DURATION.labels(queue_name=queue_name).observe(
                time.time() - start_time
            )

        if isinstance(result, dict) and result.get("success"):
            channel.basic_ack(method.delivery_tag)
            self._processed_count += 1
            QUEUE_MESSAGES_PROCESSED.labels(queue_name=queue_name, status="success").inc()
            logger.debug(f"Processed task from {queue_name} in {time.time() - start_time:.2f}s")
        else:
            error = result.get("error", "Unknown error") if isinstance(result, dict) else result
            logger.error(f"Task from {queue_name} failed permanently: {error}")
            channel.basic_nack(method.delivery_tag, requeue=False)
            self._rejected_count += 1
            QUEUE_MESSAGES_PROCESSED.labels(queue_name=queue_name, status="failed").inc()

    def _retry_or_reject(
        self,
        channel: pika.channel.Channel,
        method: pika.spec.Basic.Deliver,
        properties: pika.spec.BasicProperties,
        body: bytes,
        queue_name: str,
        max_retries: int,
        error: Exception,
    ) -> None:
        """Republish a task whose callback raised, or reject it once retries run out."""
        headers = dict(getattr(properties, "headers", None) or {})
        retry_count = int(headers.get(RETRY_HEADER, 0))

        if retry_count >= max_retries:
            logger.error(
                f"Task from {queue_name} failed after {retry_count} retries: {error}",
                exc_info=True,
            )
            channel.basic_nack(method.delivery_tag, requeue=False)
            self._rejected_count += 1
            QUEUE_MESSAGES_PROCESSED.labels(queue_name=queue_name, status="failed").inc()
            return

        headers[RETRY_HEADER] = retry_count + 1
        logger.warning(
            f"Task from {queue_name} raised {type(error).__name__}: {error} "
            f"(retry {retry_count + 1}/{max_retries})"
        )

        channel.basic_publish(
            exchange="",
            routing_key=queue_name,
            body=body,
            properties=pika.BasicProperties(
                delivery_mode=2,
                content_type="application/json",
                priority=getattr(properties, "priority", None),
                headers=headers,
            ),
        )
        channel.basic_ack(method.delivery_tag)
        self._retried_count += 1
        QUEUE_MESSAGES_PROCESSED.labels(queue_name=queue_name, status="retried").inc()

    def stop_consuming(self) -> None:
        """Stop consuming messages gracefully.

        Safe to call even if not consuming.
        """
        if self._consuming and self._channel and not self._channel.is_closed:
            try:
                self._channel.stop_consuming()
                self._consuming = False
                logger.info("Stopped consuming messages")
            except Exception as e:
                logger.warning(f"Error stopping consumption: {e}")

    def close(self) -> None:
        """Close RabbitMQ connection.

        Safe to call multiple times.
        """
        self.stop_consuming()

        if hasattr(self, "_channel") and self._channel and not self._channel.is_closed:
            try:
                self._channel.close()
            except Exception as e:
                logger.warning(f"Error closing channel: {e}")

        if hasattr(self, "_connection") and self._connection and not self._connection.is_closed:
            try:
                self._connection.close()
                logger.debug("RabbitMQ connection closed")
            except Exception as e:
                logger.warning(f"Error closing connection: {e}")

    def get_stats(self) -> Dict[str, int]:
        """Get consumption counters."""
        return {
            "processed": self._processed_count,
            "retried": self._retried_count,
            "rejected": self._rejected_count,
        }

    def __enter__(self):
        """Context manager entry."""
        self._ensure_connection()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()

    def __del__(self):
        """Destructor - cleanup connection."""
        self.close()
