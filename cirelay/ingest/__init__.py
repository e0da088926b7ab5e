"""Inbound event sources: Kafka action events and provider webhooks."""
