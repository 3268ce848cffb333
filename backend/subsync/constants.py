"""
Constants for the subscription sync service.

Operational parameters that vary per environment (thresholds, TTLs, retry
schedule) live in config.py.
"""

API_TITLE = "Subscription Sync API"
API_VERSION = "0.1.0"
