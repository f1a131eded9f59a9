"""Relay services: job store, worker, queue, webhooks and reconciliation."""
