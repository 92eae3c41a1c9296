"""
Service for Kafka message publishing.
Queues pipeline jobs for posts and comments so the worker can process them.
"""

import json
from typing import Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError

from trustpipe.config import Settings, get_settings
from trustpipe.schemas.pipeline import ContentJob
from trustpipe.utils.logger import get_logger

logger = get_logger(__name__)


class KafkaConnectionError(Exception):
    """Raised when Kafka connection or publishing fails."""
    pass


class KafkaService:
    """
    Publishes content pipeline jobs to Kafka.

    Messages are keyed by content id so every job for one post or comment
    lands on the same partition and is processed in order.
    """

    def __init__(self, settings: Optional[Settings] = None, producer: Optional[KafkaProducer] = None) -> None:
        """
        Initialize the Kafka producer.

        Args:
            settings: Process settings; the cached settings are used when omitted
            producer: Pre-built producer, mainly for tests

        Raises:
            KafkaConnectionError: If unable to connect to Kafka
        """
        self.settings = settings or get_settings()
        self.producer: Optional[KafkaProducer] = producer
        if self.producer is None:
            self._initialize_producer()

    def _initialize_producer(self) -> None:
        try:
            self.producer = KafkaProducer(
                bootstrap_servers=self.settings.kafka_bootstrap_servers.split(','),
                value_serializer=lambda v: json.dumps(v).encode('utf-8'),
                key_serializer=lambda k: str(k).encode('utf-8') if k else None,
                acks='all',
                retries=3,
                retry_backoff_ms=100
            )
            logger.info("Kafka producer initialized", bootstrap_servers=self.settings.kafka_bootstrap_servers)

        except Exception as e:
            logger.error("Failed to initialize Kafka producer", error=str(e))
            raise KafkaConnectionError(f"Cannot connect to Kafka: {str(e)}")

    def publish_content_job(self, content_type: str, content_id: str, event: str = "created") -> bool:
        """
        Publish a pipeline job for one post or comment.

        Args:
            content_type: "post" or "comment"
            content_id: Id of the content to process
            event: "created" for new content, "retry" for reprocessing

        Returns:
            True if the message was acknowledged

        Raises:
            KafkaConnectionError: If publishing fails
        """
        if not self.producer:
            raise KafkaConnectionError("Kafka producer not initialized")

        job = ContentJob(content_type=content_type, content_id=content_id, event=event)

        try:
            future = self.producer.send(
                topic=self.settings.kafka_topic_pipeline,
                key=job.content_id,
                value=job.model_dump()
            )
            record_metadata = future.get(timeout=10)

            logger.info("Pipeline job published to Kafka",
                        content_type=job.content_type,
                        content_id=job.content_id,
                        job_event=job.event,
                        topic=record_metadata.topic,
                        partition=record_metadata.partition,
                        offset=record_metadata.offset)
            return True

        except KafkaError as e:
            logger.error("Kafka publish error", content_id=content_id, error=str(e))
            raise KafkaConnectionError(f"Failed to publish message: {str(e)}")

    def close(self) -> None:
        """Close the Kafka producer connection."""
        if self.producer:
            try:
                self.producer.close(timeout=5)
                logger.info("Kafka producer closed")
            except KafkaError as e:
                logger.error("Error closing Kafka producer", error=str(e))

    def __enter__(self) -> "KafkaService":
        return self

    def __exit__(self, exc_type: Optional[type], exc_val: Optional[BaseException], exc_tb: Optional[object]) -> None:
        self.close()
