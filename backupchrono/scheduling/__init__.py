"""Cron scheduling, resource locking and retries."""
