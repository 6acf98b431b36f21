"""Durable workspace state: atomic writes, sessions, the workspace lock."""
