"""Webhook inbound pipeline.

Receives LemonSqueezy and Razorpay subscription webhooks.  Each delivery
is signature-verified, normalized to a CanonicalEvent, routed to an
Activate/Downgrade/Observe action and reconciled against the profile store.
"""
