"""Unit tests for RabbitMQConsumer.

Tests AMQP-based consumption with mocked pika connections.
"""

import json
import pytest
from unittest.mock import Mock, patch

from topfrag_pipeline.core.rabbitmq_consumer import (
    RETRY_HEADER,
    RabbitMQConsumer,
    RabbitMQConsumerError,
)


@pytest.fixture
def mock_connection():
    """Mock pika connection and channel."""
    connection = Mock()
    channel = Mock()
    connection.is_closed = False
    channel.is_closed = False
    connection.channel.return_value = channel
    return connection, channel


@pytest.fixture
def consumer(mock_connection):
    """Create RabbitMQConsumer with mocked connection."""
    conn, channel = mock_connection

    with patch('topfrag_pipeline.core.rabbitmq_consumer.pika.BlockingConnection', return_value=conn):
        consumer = RabbitMQConsumer(
            host='localhost',
            username='test',
            password='pass',
            environment='dev'
        )
        yield consumer, channel


def deliver(consumer, channel, task, callback, headers=None, max_retries=3):
    """Run one delivery through the consumer's message handler."""
    method = Mock(delivery_tag=7)
    properties = Mock(headers=headers, priority=9)
    body = task if isinstance(task, bytes) else json.dumps(task).encode('utf-8')
    consumer._on_message_callback(
        channel, method, properties, body, callback, 'match.aggregate.dev', max_retries
    )
    return body


# ============================================================================
# Initialization Tests
# ============================================================================

class TestRabbitMQConsumerInitialization:
    """Test consumer initialization."""

    def test_initialization_with_defaults(self):
        consumer = RabbitMQConsumer(host='localhost', username='user', password='pass')

        assert consumer.host == 'localhost'
        assert consumer.port == 5672
        assert consumer.environment == 'prod'
        assert consumer.prefetch_count == 1

    def test_queue_name_includes_environment(self, consumer):
        consumer, _ = consumer

        assert consumer._build_queue_name('demo.upload') == 'demo.upload.dev'


# ============================================================================
# Consumption Tests
# ============================================================================

class TestConsume:
    """Test queue declaration and consumption setup."""

    def test_declares_priority_queue(self, consumer):
        consumer, channel = consumer

        consumer.consume('match.aggregate', Mock())

        channel.basic_qos.assert_called_once_with(prefetch_count=1)
        channel.queue_declare.assert_called_once_with(
            queue='match.aggregate.dev', durable=True, arguments={'x-max-priority': 10}
        )
        assert channel.basic_consume.call_args[1]['auto_ack'] is False
        channel.start_consuming.assert_called_once()

    def test_consumption_failure_wrapped(self, consumer):
        consumer, channel = consumer
        channel.start_consuming.side_effect = RuntimeError('channel closed')

        with pytest.raises(RabbitMQConsumerError, match='Consumption failed'):
            consumer.consume('match.aggregate', Mock())


# ============================================================================
# Message Handling Tests
# ============================================================================

class TestMessageHandling:
    """Test ack, retry and reject decisions."""

    def test_success_acknowledged(self, consumer):
        consumer, channel = consumer
        callback = Mock(return_value={'success': True})

        deliver(consumer, channel, {'job_id': 'abc'}, callback)

        callback.assert_called_once_with({'job_id': 'abc'})
        channel.basic_ack.assert_called_once_with(7)
        assert consumer.get_stats()['processed'] == 1

    def test_failure_result_rejected(self, consumer):
        consumer, channel = consumer
        callback = Mock(return_value={'success': False, 'error': 'Job not found'})

        deliver(consumer, channel, {'job_id': 'abc'}, callback)

        channel.basic_nack.assert_called_once_with(7, requeue=False)
        channel.basic_publish.assert_not_called()
        assert consumer.get_stats()['rejected'] == 1

    def test_exception_republished_with_retry_count(self, consumer):
        consumer, channel = consumer
        callback = Mock(side_effect=RuntimeError('database unavailable'))

        body = deliver(consumer, channel, {'job_id': 'abc'}, callback, headers={RETRY_HEADER: 1})

        publish = channel.basic_publish.call_args[1]
        assert publish['routing_key'] == 'match.aggregate.dev'
        assert publish['body'] == body
        assert publish['properties'].headers[RETRY_HEADER] == 2
        assert publish['properties'].priority == 9
        channel.basic_ack.assert_called_once_with(7)
        assert consumer.get_stats()['retried'] == 1

    def test_exception_rejected_after_max_retries(self, consumer):
        consumer, channel = consumer
        callback = Mock(side_effect=RuntimeError('database unavailable'))

        deliver(consumer, channel, {'job_id': 'abc'}, callback, headers={RETRY_HEADER: 3})

        channel.basic_publish.assert_not_called()
        channel.basic_nack.assert_called_once_with(7, requeue=False)

    def test_invalid_json_rejected(self, consumer):
        consumer, channel = consumer
        callback = Mock()

        deliver(consumer, channel, b'{not json', callback)

        callback.assert_not_called()
        channel.basic_nack.assert_called_once_with(7, requeue=False)


# ============================================================================
# Shutdown Tests
# ============================================================================

class TestShutdown:
    """Test graceful shutdown."""

    def test_close_is_safe_when_never_connected(self):
        consumer = RabbitMQConsumer(host='localhost')

        consumer.close()
        consumer.close()

    def test_close_stops_consumption(self, consumer):
        consumer, channel = consumer
        consumer.consume('demo.upload', Mock())

        consumer.close()

        channel.stop_consuming.assert_called_once()
        channel.close.assert_called_once()
