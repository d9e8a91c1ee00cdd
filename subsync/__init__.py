"""subsync: subscription webhook ingestion.

Receives LemonSqueezy and Razorpay webhooks, verifies them, normalizes
each payload into a canonical event and reconciles the user's plan in
the profile store.
"""
