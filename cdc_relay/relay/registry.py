"""Operational surface: register, start, inspect, reset and stop relays.

Registering a relay plays the part of registering a connector: it binds a
source to a reader, a sink and a set of checkpoints, and wires up the source
relay and its materializer. One relay per source; a second registration for
the same source is a configuration error.
"""

import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from cdc_relay.common.config import RelayConfig
from cdc_relay.common.exceptions import DuplicateReader, RelayNotFound
from cdc_relay.observability.health import HealthChecker
from cdc_relay.observability.logging_config import get_logger
from cdc_relay.observability.metrics import MetricsExporter
from cdc_relay.relay.checkpoint import CheckpointStore
from cdc_relay.relay.log_reader import LogReader
from cdc_relay.relay.materializer import Materializer
from cdc_relay.relay.normalizer import ChangeNormalizer
from cdc_relay.relay.pipeline import SourceRelay
from cdc_relay.relay.publisher import OrderedPublisher, topic_for_source
from cdc_relay.relay.sinks import Sink
from cdc_relay.relay.transport import Transport

logger = get_logger(__name__)


@dataclass
class RelaySpec:
    """Registration of one source."""

    name: str
    source_id: str
    key_columns: List[str]
    schema: Dict[str, str] = field(default_factory=dict)
    snapshot_on_start: bool = True


@dataclass
class RelayHandle:
    """Running components of a registered relay."""

    spec: RelaySpec
    sink: Sink
    relay: SourceRelay
    materializer: Materializer


class RelayRegistry:
    """Registry of relays sharing one reader, transport and checkpoint stores."""

    def __init__(
        self,
        reader: LogReader,
        transport: Transport,
        sink_factory: Callable[[RelaySpec], Sink],
        offsets: CheckpointStore,
        checkpoints: CheckpointStore,
        config: Optional[RelayConfig] = None,
        topic_prefix: str = "cdc",
        metrics: Optional[MetricsExporter] = None,
        health: Optional[HealthChecker] = None,
    ) -> None:
        """
        Initialize relay registry.

        Args:
            reader: Source change log reader
            transport: Partitioned transport
            sink_factory: Builds the sink for a registration
            offsets: Store for published source positions
            checkpoints: Store for materializer lane checkpoints
            config: Relay settings (defaults from environment)
            topic_prefix: Prefix of per-source topics
            metrics: Metrics exporter
            health: Status surface
        """
        self.reader = reader
        self.transport = transport
        self.sink_factory = sink_factory
        self.offsets = offsets
        self.checkpoints = checkpoints
        self.config = config or RelayConfig()
        self.topic_prefix = topic_prefix
        self.metrics = metrics or MetricsExporter()
        self.health = health or HealthChecker()
        self.publisher = OrderedPublisher(
            transport,
            partition_count=self.config.partition_count,
            topic_prefix=topic_prefix,
            max_attempts=self.config.publish_max_attempts,
            initial_backoff=self.config.publish_initial_backoff_seconds,
            backoff_factor=self.config.backoff_factor,
            max_backoff=self.config.max_backoff_seconds,
            metrics=self.metrics,
        )
        self._relays: Dict[str, RelayHandle] = {}
        self._lock = threading.Lock()

    def register(self, spec: RelaySpec) -> RelayHandle:
        """
        Register a relay.

        Args:
            spec: Registration

        Returns:
            Relay handle (not started)

        Raises:
            DuplicateReader: If the name or the source is already registered
        """
        with self._lock:
            if spec.name in self._relays:
                raise DuplicateReader(f"Relay {spec.name} is already registered", spec.source_id)
            for handle in self._relays.values():
                if handle.spec.source_id == spec.source_id:
                    raise DuplicateReader(
                        f"Source {spec.source_id} already has relay {handle.spec.name}",
                        spec.source_id,
                    )
            self.transport.ensure_topic(
                topic_for_source(self.topic_prefix, spec.source_id), self.config.partition_count
            )
            handle = self._build(spec, sink=self.sink_factory(spec))
            self._relays[spec.name] = handle

        logger.info(
            f"Registered relay {spec.name} for {spec.source_id} (keys {spec.key_columns})",
            extra={"relay": spec.name, "source_id": spec.source_id},
        )
        return handle

    def _build(self, spec: RelaySpec, sink: Sink, snapshot: Optional[bool] = None) -> RelayHandle:
        normalizer = ChangeNormalizer(
            key_columns={spec.source_id: spec.key_columns},
            schemas={spec.source_id: spec.schema} if spec.schema else None,
        )
        relay = SourceRelay(
            spec.source_id,
            self.reader,
            normalizer,
            self.publisher,
            self.offsets,
            on_malformed=self.config.on_malformed,
            snapshot_on_start=spec.snapshot_on_start if snapshot is None else snapshot,
            initial_backoff=self.config.publish_initial_backoff_seconds,
            backoff_factor=self.config.backoff_factor,
            max_backoff=self.config.max_backoff_seconds,
            metrics=self.metrics,
            health=self.health,
        )
        materializer = Materializer(
            spec.source_id,
            self.transport,
            sink,
            self.checkpoints,
            partition_count=self.config.partition_count,
            topic_prefix=self.topic_prefix,
            batch_size=self.config.batch_size,
            poll_timeout=self.config.poll_timeout_ms / 1000.0,
            retry_initial_backoff=self.config.sink_retry_initial_backoff_seconds,
            backoff_factor=self.config.backoff_factor,
            max_backoff=self.config.max_backoff_seconds,
            metrics=self.metrics,
            health=self.health,
        )
        return RelayHandle(spec=spec, sink=sink, relay=relay, materializer=materializer)

    def get(self, name: str) -> RelayHandle:
        with self._lock:
            handle = self._relays.get(name)
        if handle is None:
            raise RelayNotFound(f"No relay named {name}")
        return handle

    @property
    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._relays)

    def start(self, name: str) -> None:
        handle = self.get(name)
        handle.materializer.start()
        handle.relay.start()
        logger.info(f"Started relay {name}", extra={"relay": name, "source_id": handle.spec.source_id})

    def start_all(self) -> None:
        for name in self.names:
            self.start(name)

    def stop(self, name: str, timeout: Optional[float] = None) -> None:
        """Stop a relay: reader first, then lanes after their in-flight writes."""
        handle = self.get(name)
        handle.relay.stop(timeout)
        handle.materializer.stop(timeout)
        logger.info(f"Stopped relay {name}", extra={"relay": name, "source_id": handle.spec.source_id})

    def stop_all(self, timeout: Optional[float] = None) -> None:
        for name in self.names:
            self.stop(name, timeout)

    def unregister(self, name: str) -> None:
        self.stop(name)
        with self._lock:
            handle = self._relays.pop(name)
        handle.sink.close()
        self.health.remove_component(f"relay:{handle.spec.source_id}")
        for lane in handle.materializer.lanes:
            self.health.remove_component(f"lane:{lane.name}")

    def reset(self, name: str) -> RelayHandle:
        """
        Resnapshot a source whose resume position is gone.

        Stops the relay, truncates the sink, discards the reader state kept at
        the source (a replication slot), drops the stored source position,
        moves every lane checkpoint to the current end of its partition so
        old records are not replayed, and rebuilds the relay so its next
        start emits a fresh snapshot.

        Returns:
            New relay handle (not started)
        """
        handle = self.get(name)
        self.stop(name)
        source_id = handle.spec.source_id

        handle.sink.truncate()
        self.reader.discard(source_id)
        self.offsets.delete(source_id)
        topic = handle.materializer.topic
        for lane in handle.materializer.lanes:
            end = self.transport.end_offset(topic, lane.partition)
            if end > 0:
                self.checkpoints.save(source_id, 0, lane.partition, offset=end - 1)
            else:
                self.checkpoints.delete(source_id, lane.partition)

        new_handle = self._build(handle.spec, sink=handle.sink, snapshot=True)
        with self._lock:
            self._relays[name] = new_handle
        logger.info(
            f"Reset relay {name}; next start resnapshots {source_id}",
            extra={"relay": name, "source_id": source_id},
        )
        return new_handle

    def status(self, name: str) -> Dict[str, Any]:
        """
        Running/error status of a relay and its lanes.

        Returns:
            Status dictionary
        """
        handle = self.get(name)
        relay_status = handle.relay.status()
        materializer_status = handle.materializer.status()
        failed = [lane["partition"] for lane in materializer_status["lanes"] if lane["state"] == "FAILED"]
        return {
            "name": name,
            "source_id": handle.spec.source_id,
            "relay": relay_status,
            "materializer": materializer_status,
            "healthy": relay_status["state"] != "FAILED" and not failed,
            "failed_lanes": failed,
        }

    def statuses(self) -> Dict[str, Any]:
        return {"relays": [self.status(name) for name in self.names]}

    def close(self) -> None:
        """Close every sink, the transport and both checkpoint stores."""
        with self._lock:
            handles = list(self._relays.values())
        for handle in handles:
            handle.sink.close()
        self.transport.close()
        self.offsets.close()
        self.checkpoints.close()
