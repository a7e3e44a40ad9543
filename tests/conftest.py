"""
Pytest configuration and shared fixtures for CDC relay tests.
"""

import pytest
from dotenv import load_dotenv

from cdc_relay.common.config import RelayConfig
from cdc_relay.observability.health import HealthChecker
from cdc_relay.observability.metrics import MetricsExporter
from cdc_relay.relay.checkpoint import InMemoryCheckpointStore
from cdc_relay.relay.log_reader import InMemoryChangeLog
from cdc_relay.relay.registry import RelayRegistry, RelaySpec
from cdc_relay.relay.sinks import InMemorySink, SinkSchema
from cdc_relay.relay.transport import InMemoryTransport

# Load environment variables
load_dotenv()


@pytest.fixture
def relay_config():
    """Fast relay settings: small backoffs and short polls."""
    return RelayConfig(
        partition_count=4,
        publish_max_attempts=3,
        publish_initial_backoff_seconds=0.01,
        backoff_factor=2.0,
        max_backoff_seconds=0.05,
        sink_retry_initial_backoff_seconds=0.01,
        batch_size=50,
        poll_timeout_ms=20,
    )


@pytest.fixture
def change_log():
    """In-memory source change log with a ``customers`` table."""
    log = InMemoryChangeLog(poll_interval=0.01)
    log.create_source("customers", ["id"])
    return log


@pytest.fixture
def transport():
    """In-memory partitioned transport."""
    return InMemoryTransport()


@pytest.fixture
def sink():
    """Replace-by-key in-memory sink."""
    return InMemorySink(SinkSchema({"id": "int", "name": "text"}))


@pytest.fixture
def offsets():
    """Store for published source positions."""
    return InMemoryCheckpointStore()


@pytest.fixture
def lane_checkpoints():
    """Store for materializer lane checkpoints."""
    return InMemoryCheckpointStore()


@pytest.fixture
def metrics():
    """Metrics exporter that never starts an HTTP server."""
    return MetricsExporter(port=0)


@pytest.fixture
def health():
    """Fresh health checker."""
    return HealthChecker()


@pytest.fixture
def registry(change_log, transport, sink, offsets, lane_checkpoints, relay_config, metrics, health):
    """Registry wired to in-memory backends, stopped on teardown."""
    reg = RelayRegistry(
        change_log,
        transport,
        lambda spec: sink,
        offsets,
        lane_checkpoints,
        config=relay_config,
        metrics=metrics,
        health=health,
    )
    yield reg
    reg.stop_all(timeout=5)


@pytest.fixture
def customers_spec():
    """Registration of the ``customers`` source."""
    return RelaySpec(
        name="customers",
        source_id="customers",
        key_columns=["id"],
        schema={"id": "int", "name": "text"},
        snapshot_on_start=False,
    )
