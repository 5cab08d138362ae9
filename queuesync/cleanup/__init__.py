"""Cleanup jobs: drain converted users out of their queues."""
