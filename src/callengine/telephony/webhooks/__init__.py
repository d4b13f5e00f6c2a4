"""Webhook handling for vendor call status callbacks."""
