"""
Tests for the Kafka job publisher.
"""

from unittest.mock import Mock

import pytest
from kafka.errors import KafkaTimeoutError

from trustpipe.config import Settings
from trustpipe.services.kafka_service import KafkaConnectionError, KafkaService


@pytest.fixture
def producer() -> Mock:
    producer = Mock()
    producer.send.return_value.get.return_value = Mock(topic="content-pipeline-jobs", partition=0, offset=7)
    return producer


@pytest.fixture
def service(producer: Mock) -> KafkaService:
    return KafkaService(settings=Settings(), producer=producer)


class TestKafkaService:
    """Test KafkaService."""

    def test_publish_content_job(self, service: KafkaService, producer: Mock) -> None:
        assert service.publish_content_job("post", "post-1")

        producer.send.assert_called_once_with(
            topic="content-pipeline-jobs",
            key="post-1",
            value={"content_type": "post", "content_id": "post-1", "event": "created"},
        )
        producer.send.return_value.get.assert_called_once_with(timeout=10)

    def test_publish_retry(self, service: KafkaService, producer: Mock) -> None:
        service.publish_content_job("comment", "comment-1", event="retry")
        assert producer.send.call_args.kwargs["value"]["event"] == "retry"

    def test_publish_failure(self, service: KafkaService, producer: Mock) -> None:
        producer.send.return_value.get.side_effect = KafkaTimeoutError("no broker")

        with pytest.raises(KafkaConnectionError):
            service.publish_content_job("post", "post-1")

    def test_context_manager_closes_producer(self, producer: Mock) -> None:
        with KafkaService(settings=Settings(), producer=producer):
            pass
        producer.close.assert_called_once_with(timeout=5)
