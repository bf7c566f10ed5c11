"""Webhook inbound system.

Receives signed webhooks from commerce providers.
Each webhook is signature-verified, recorded, and dispatched async.
"""
