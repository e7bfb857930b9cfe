"""
Provider webhook endpoints and event ingestion.
"""

from comms_engine.telephony.webhooks.handler import IngestionOutcome, WebhookIngestor

__all__ = ["IngestionOutcome", "WebhookIngestor"]
