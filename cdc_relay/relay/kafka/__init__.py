"""Kafka transport."""
