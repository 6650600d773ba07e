"""RabbitMQ Publisher - work queue submission over AMQP.

This module provides the submit side of the pipeline's work queue. Tasks are
plain JSON dictionaries routed to environment-specific queues so that
reprocessing can be published at a higher priority than routine runs.

Key features:
- Environment-aware queue naming ({queue_name}.{env}, e.g. demo.upload.prod)
- Priority queues (x-max-priority) with named priorities
- Connection management with lazy reconnect
- Message persistence and durability
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import pika
from pika.exceptions import AMQPConnectionError


logger = logging.getLogger(__name__)


# Named task priorities mapped onto AMQP message priorities
PRIORITIES = {"high": 9, "default": 1}

MAX_PRIORITY = 10

# Queue names used by the pipeline
DEMO_UPLOAD_QUEUE = "demo.upload"
MATCH_AGGREGATE_QUEUE = "match.aggregate"


class RabbitMQError(Exception):
    """Custom exception for RabbitMQ operations."""

    pass


def queue_arguments() -> Dict[str, Any]:
    """Arguments every pipeline queue is declared with.

    Publisher and consumer must declare queues identically or RabbitMQ
    rejects the second declaration with PRECONDITION_FAILED.
    """
    return {"x-max-priority": MAX_PRIORITY}


class RabbitMQPublisher:
    """RabbitMQ publisher for the demo processing pipeline.

    Queue naming: {queue_name}.{environment}

    Example:
        >>> publisher = RabbitMQPublisher(host="localhost", environment="prod")
        >>> publisher.submit({"job_id": "abc"}, "match.aggregate", priority="high")
        True
    """

    def __init__(
        self,
        host: Optional[str] = None,
        port: int = 5672,
        username: Optional[str] = None,
        password: Optional[str] = None,
        vhost: str = "/",
        environment: Optional[str] = None,
        connection_timeout: int = 10,
        heartbeat: int = 600,
    ):
        """Initialize RabbitMQ publisher.

        Args:
            host: RabbitMQ host (auto-detects from env if None)
            port: RabbitMQ AMQP port (default: 5672)
            username: RabbitMQ username (auto-detects from env if None)
            password: RabbitMQ password (auto-detects from env if None)
            vhost: RabbitMQ virtual host (default: "/")
            environment: Environment (prod, dev, etc.) (auto-detects if None)
            connection_timeout: Connection timeout in seconds
            heartbeat: Heartbeat interval in seconds

        Raises:
            RabbitMQError: If required configuration is missing
        """
        config = self._parse_config(host, port, username, password, vhost, environment)

        self.host = config["host"]
        self.port = config["port"]
        self.username = config["username"]
        self.password = config["password"]
        self.vhost = config["vhost"]
        self.environment = config["environment"]
        self.connection_timeout = connection_timeout
        self.heartbeat = heartbeat

        # Connection and channel (lazy initialization)
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Optional[pika.channel.Channel] = None

        logger.info(
            f"RabbitMQ publisher initialized: {self.host}:{self.port} (vhost={self.vhost}, env={self.environment})"
        )

    def _parse_config(
        self,
        host: Optional[str],
        port: int,
        username: Optional[str],
        password: Optional[str],
        vhost: str,
        environment: Optional[str],
    ) -> Dict[str, Any]:
        """Parse configuration from parameters and environment variables.

        Inside a container RABBITMQ_CONTAINER_HOST takes precedence over
        RABBITMQ_HOST.

        Returns:
            Configuration dictionary

        Raises:
            RabbitMQError: If required configuration is missing
        """
        is_container = Path("/.dockerenv").exists() or Path("/run/.containerenv").exists()

        if host is None:
            if is_container and os.getenv("RABBITMQ_CONTAINER_HOST"):
                host = os.getenv("RABBITMQ_CONTAINER_HOST")
            else:
                host = os.getenv("RABBITMQ_HOST")

            if not host:
                raise RabbitMQError("RabbitMQ host is not set in environment")

        if username is None:
            username = os.getenv("RABBITMQ_USER")
            if not username:
                raise RabbitMQError("RabbitMQ username is not set in environment")

        if password is None:
            password = os.getenv("RABBITMQ_PASSWORD")
            if not password:
                raise RabbitMQError("RabbitMQ password is not set in environment")

        if port == 5672:  # Default not overridden
            env_port = os.getenv("RABBITMQ_PORT")
            if env_port:
                port = int(env_port)

        env_vhost = os.getenv("RABBITMQ_VHOST")
        if env_vhost:
            vhost = env_vhost

        if environment is None:
            environment = os.getenv("ENVIRONMENT", "prod").lower()

        return {
            "host": host,
            "port": port,
            "username": username,
            "password": password,
            "vhost": vhost,
            "environment": environment,
            "is_container": is_container,
        }

    def _build_queue_name(self, queue_name: str) -> str:
        """Build environment-aware queue name.

        Args:
            queue_name: Logical queue (demo.upload, match.aggregate)

        Returns:
            Queue name (e.g., "demo.upload.prod")
        """
        return f"{queue_name}.{self.environment}"

    def _ensure_connection(self) -> None:
        """Ensure connection and channel are established.

        Raises:
            RabbitMQError: If connection fails
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

                logger.debug(f"Connected to RabbitMQ: {self.host}:{self.port}")

            except AMQPConnectionError as e:
                raise RabbitMQError(f"Failed to connect to RabbitMQ: {e}")

    def submit(
        self,
        task: Dict[str, Any],
        queue_name: str,
        priority: str = "default",
        headers: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Submit a task to a work queue.

        Adds environment and queue_target to the task, publishes through the
        default exchange with routing_key = queue name, and returns False
        instead of raising when publishing fails.

        Args:
            task: Task payload (will be JSON serialized)
            queue_name: Logical queue name (e.g. "match.aggregate")
            priority: "high" for reprocessing, "default" for routine runs
            headers: Optional AMQP headers (used for retry bookkeeping)

        Returns:
            True if the task was published successfully, False otherwise

        Raises:
            ValueError: If priority is not a known name
        """
        if priority not in PRIORITIES:
            raise ValueError(f"Unknown priority '{priority}', expected one of {sorted(PRIORITIES)}")

        routing_key = self._build_queue_name(queue_name)

        try:
            self._ensure_connection()

            # Declare queue (idempotent - safe to call multiple times)
            self._channel.queue_declare(
                queue=routing_key, durable=True, arguments=queue_arguments()
            )

            task_with_metadata = task.copy()
            task_with_metadata["environment"] = self.environment
            task_with_metadata["queue_target"] = routing_key

            payload = json.dumps(task_with_metadata)

            amqp_properties = pika.BasicProperties(
                delivery_mode=2,  # Persistent message
                content_type="application/json",
                priority=PRIORITIES[priority],
                headers=headers or {},
            )

            self._channel.basic_publish(
                exchange="",
                routing_key=routing_key,
                body=payload,
                properties=amqp_properties,
            )

            logger.debug(f"Submitted task to queue: {routing_key} (priority={priority})")
            return True

        except Exception as e:
            logger.warning(f"Failed to submit task to {routing_key}: {e}")
            return False

    def close(self) -> None:
        """Close RabbitMQ connection.

        Safe to call multiple times.
        """
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
