"""Kafka-backed transport.

Each source topic is created with one Kafka partition per relay partition, so
the relay's partition choice maps one-to-one onto Kafka partitions and Kafka's
per-partition ordering carries the relay's ordering guarantee. The producer
runs with ``acks=all`` and one in-flight request, and ``append`` blocks until
the broker acknowledged the record.
"""

import threading
from typing import Dict, List, Optional, Tuple

from kafka import KafkaConsumer, KafkaProducer, TopicPartition
from kafka.admin import KafkaAdminClient, NewTopic
from kafka.errors import KafkaError, TopicAlreadyExistsError

from cdc_relay.common.exceptions import TransportUnavailable
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.relay.transport import Record, Transport

logger = get_logger(__name__)


class KafkaTransport(Transport):
    """Transport over Kafka topics with explicit partition assignment."""

    def __init__(
        self,
        bootstrap_servers: List[str],
        request_timeout_ms: int = 30000,
        client_id: str = "cdc-relay",
        replication_factor: int = 1,
    ) -> None:
        """
        Initialize Kafka transport.

        Args:
            bootstrap_servers: Broker addresses
            request_timeout_ms: Timeout for produce acknowledgements
            client_id: Client id reported to the brokers
            replication_factor: Replication factor for created topics
        """
        self.bootstrap_servers = bootstrap_servers
        self.request_timeout_ms = request_timeout_ms
        self.client_id = client_id
        self.replication_factor = replication_factor
        self._producer: Optional[KafkaProducer] = None
        self._producer_lock = threading.Lock()
        self._consumers: Dict[Tuple[str, int], KafkaConsumer] = {}
        self._positions: Dict[Tuple[str, int], int] = {}
        self._consumer_locks: Dict[Tuple[str, int], threading.Lock] = {}
        self._consumers_guard = threading.Lock()

    def _get_producer(self) -> KafkaProducer:
        with self._producer_lock:
            if self._producer is None:
                try:
                    self._producer = KafkaProducer(
                        bootstrap_servers=self.bootstrap_servers,
                        client_id=self.client_id,
                        acks="all",
                        retries=0,
                        max_in_flight_requests_per_connection=1,
                        request_timeout_ms=self.request_timeout_ms,
                    )
                    logger.info(f"Connected Kafka producer to {self.bootstrap_servers}")
                except KafkaError as e:
                    raise TransportUnavailable(f"Kafka producer unavailable: {e}") from e
            return self._producer

    def _consumer(self, topic: str, partition: int) -> Tuple[KafkaConsumer, threading.Lock]:
        key = (topic, partition)
        with self._consumers_guard:
            if key not in self._consumers:
                try:
                    consumer = KafkaConsumer(
                        bootstrap_servers=self.bootstrap_servers,
                        client_id=f"{self.client_id}-{topic}-{partition}",
                        group_id=None,
                        enable_auto_commit=False,
                    )
                except KafkaError as e:
                    raise TransportUnavailable(f"Kafka consumer unavailable: {e}") from e
                consumer.assign([TopicPartition(topic, partition)])
                self._consumers[key] = consumer
                self._consumer_locks[key] = threading.Lock()
            return self._consumers[key], self._consumer_locks[key]

    def ensure_topic(self, topic: str, partitions: int) -> None:
        """
        Create ``topic`` with ``partitions`` partitions unless it exists.

        Raises:
            TransportUnavailable: If the cluster cannot be reached or rejects
                the topic
        """
        try:
            admin = KafkaAdminClient(
                bootstrap_servers=self.bootstrap_servers, client_id=self.client_id
            )
        except KafkaError as e:
            raise TransportUnavailable(f"Kafka admin client unavailable: {e}") from e
        try:
            admin.create_topics(
                [
                    NewTopic(
                        name=topic,
                        num_partitions=partitions,
                        replication_factor=self.replication_factor,
                    )
                ]
            )
            logger.info(f"Created topic {topic} with {partitions} partitions")
        except TopicAlreadyExistsError:
            logger.debug(f"Topic {topic} already exists")
        except KafkaError as e:
            raise TransportUnavailable(f"Cannot create topic {topic}: {e}") from e
        finally:
            admin.close()

    def append(self, topic: str, partition: int, key: bytes, value: bytes) -> int:
        producer = self._get_producer()
        try:
            future = producer.send(topic, key=key, value=value, partition=partition)
            metadata = future.get(timeout=self.request_timeout_ms / 1000.0)
        except KafkaError as e:
            raise TransportUnavailable(f"Append to {topic}[{partition}] failed: {e}") from e
        return metadata.offset

    def read(
        self,
        topic: str,
        partition: int,
        offset: int,
        max_records: int = 100,
        timeout: float = 1.0,
    ) -> List[Record]:
        consumer, lock = self._consumer(topic, partition)
        tp = TopicPartition(topic, partition)
        with lock:
            if self._positions.get((topic, partition)) != offset:
                consumer.seek(tp, offset)
            try:
                batch = consumer.poll(timeout_ms=int(timeout * 1000), max_records=max_records)
            except KafkaError as e:
                self._positions.pop((topic, partition), None)
                raise TransportUnavailable(f"Read from {topic}[{partition}] failed: {e}") from e
            records = [
                Record(topic, partition, message.offset, message.key or b"", message.value)
                for message in batch.get(tp, [])
            ]
            self._positions[(topic, partition)] = records[-1].offset + 1 if records else offset
        return records

    def end_offset(self, topic: str, partition: int) -> int:
        consumer, lock = self._consumer(topic, partition)
        tp = TopicPartition(topic, partition)
        with lock:
            try:
                return consumer.end_offsets([tp])[tp]
            except KafkaError as e:
                raise TransportUnavailable(f"End offset of {topic}[{partition}] failed: {e}") from e

    def close(self) -> None:
        with self._producer_lock:
            if self._producer is not None:
                self._producer.flush()
                self._producer.close()
                self._producer = None
        with self._consumers_guard:
            for consumer in self._consumers.values():
                consumer.close()
            self._consumers.clear()
            self._positions.clear()
        logger.info("Closed Kafka transport")
