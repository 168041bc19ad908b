"""Webhook ingestion: turning tracker events into work items."""
