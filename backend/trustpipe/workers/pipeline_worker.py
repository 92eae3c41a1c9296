"""
Kafka consumer worker for the content pipeline.
Runs the orchestrator for queued posts and comments and periodically sweeps
documents left pending, failed or stale.
"""

import json
import signal
import sys
import time
from typing import Any, Callable, Dict, Optional

from kafka import KafkaConsumer
from pydantic import ValidationError

from trustpipe.config import PipelineConfig, Settings, get_settings
from trustpipe.db.database import build_engine, get_session_factory, init_db
from trustpipe.pipeline.orchestrator import PipelineOrchestrator
from trustpipe.schemas.pipeline import ContentJob
from trustpipe.services.document_store import DocumentStore
from trustpipe.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)

POLL_TIMEOUT_MS = 1000


class PipelineWorker:
    """
    Kafka consumer worker that processes pipeline jobs.

    Consumes content jobs, hands posts and comments to the orchestrator, and
    runs the sweep between polls once the sweep interval has passed.
    """

    def __init__(self, orchestrator: PipelineOrchestrator, settings: Settings,
                 consumer: Optional[KafkaConsumer] = None,
                 clock: Callable[[], float] = time.monotonic) -> None:
        """
        Initialize the pipeline worker.

        Args:
            orchestrator: Orchestrator that runs the pipeline
            settings: Process settings (topic, brokers, sweep interval)
            consumer: Pre-built consumer, mainly for tests
            clock: Monotonic clock used to schedule sweeps
        """
        self.orchestrator = orchestrator
        self.settings = settings
        self.consumer = consumer
        self.running = False
        self._clock = clock
        self._last_sweep: Optional[float] = None

        logger.info("Pipeline worker initialized")

    def _setup_consumer(self) -> None:
        """Set up Kafka consumer with error handling."""
        try:
            self.consumer = KafkaConsumer(
                self.settings.kafka_topic_pipeline,
                bootstrap_servers=self.settings.kafka_bootstrap_servers.split(','),
                value_deserializer=lambda m: json.loads(m.decode('utf-8')),
                key_deserializer=lambda m: m.decode('utf-8') if m else None,
                group_id='pipeline-workers',
                auto_offset_reset='latest',
                enable_auto_commit=True,
            )
            logger.info("Kafka consumer setup complete",
                        topic=self.settings.kafka_topic_pipeline,
                        bootstrap_servers=self.settings.kafka_bootstrap_servers)

        except Exception as e:
            logger.error("Failed to setup Kafka consumer", error=str(e))
            raise

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info("Received shutdown signal", signal=signum)
            self.running = False

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def handle_message(self, message: Dict[str, Any]) -> Optional[str]:
        """
        Process a single pipeline job message.

        Args:
            message: Deserialized Kafka message value

        Returns:
            Processing status of the document afterwards, or None when the
            message was invalid or the document is gone
        """
        try:
            job = ContentJob.model_validate(message)
        except ValidationError as e:
            logger.error("Invalid pipeline job message", message_value=message, error=str(e))
            return None

        logger.info("Worker picked up job", content_type=job.content_type, content_id=job.content_id,
                    job_event=job.event)
        store = self.orchestrator.store

        if job.content_type == "post":
            post = store.get_post(job.content_id)
            if post is None:
                logger.error("Post not found for job", content_id=job.content_id)
                return None
            if job.event == "created":
                result = self.orchestrator.on_post_created(post)
            else:
                result = self.orchestrator.process_post(post)
            return result.processing_status

        comment = store.get_comment(job.content_id)
        if comment is None:
            logger.error("Comment not found for job", content_id=job.content_id)
            return None
        return self.orchestrator.process_comment(comment).processing_status

    def maybe_sweep(self) -> bool:
        """
        Run the sweep when the interval has passed since the last one.

        Returns:
            True if a sweep ran
        """
        now = self._clock()
        if self._last_sweep is not None and now - self._last_sweep < self.settings.sweep_interval_seconds:
            return False

        self._last_sweep = now
        try:
            report = self.orchestrator.run_sweep()
            logger.info("Sweep finished", processed=report.processed, skipped=report.skipped, failed=report.failed)
        except Exception as e:
            logger.error("Sweep failed", error=str(e))
        return True

    def run(self) -> None:
        """
        Main worker loop.

        Sets up the consumer, polls for jobs, processes them and sweeps between polls.
        """
        logger.info("Starting pipeline worker")

        try:
            self._setup_signal_handlers()
            if self.consumer is None:
                self._setup_consumer()

            self.running = True
            logger.info("Worker ready to process pipeline jobs")

            while self.running:
                batches = self.consumer.poll(timeout_ms=POLL_TIMEOUT_MS)
                for records in batches.values():
                    for record in records:
                        if not self.running:
                            break
                        try:
                            self.handle_message(record.value)
                        except Exception as e:
                            logger.error("Error processing message",
                                         error=str(e),
                                         message_key=record.key,
                                         message_value=record.value)
                self.maybe_sweep()

        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")
        finally:
            self.stop()

    def stop(self) -> None:
        """Stop the worker gracefully."""
        logger.info("Stopping pipeline worker")
        self.running = False

        if self.consumer:
            try:
                self.consumer.close()
                logger.info("Kafka consumer closed")
            except Exception as e:
                logger.error("Error closing Kafka consumer", error=str(e))

        if self.orchestrator.side_effects is not None:
            self.orchestrator.side_effects.shutdown(wait=True)

        logger.info("Pipeline worker stopped")


def build_worker(settings: Optional[Settings] = None) -> PipelineWorker:
    """Wire the store, orchestrator and worker from settings."""
    settings = settings or get_settings()
    engine = build_engine(settings.database_url)
    init_db(engine)

    store = DocumentStore(get_session_factory(engine))
    orchestrator = PipelineOrchestrator.from_settings(settings, store, PipelineConfig.from_settings(settings))
    return PipelineWorker(orchestrator, settings)


def main() -> None:
    """Main entry point for the pipeline worker."""
    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.log_json)
    logger.info("Trust pipeline worker starting")

    try:
        worker = build_worker(settings)
        worker.run()
    except Exception as e:
        logger.error("Failed to start pipeline worker", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
