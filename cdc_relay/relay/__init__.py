"""Relay components: log reader, normalizer, publisher, materializer, checkpoints."""

from cdc_relay.relay.events import ChangeEvent, Checkpoint, Operation, RawEntry

__all__ = ["ChangeEvent", "Checkpoint", "Operation", "RawEntry"]
