"""Monitoring HTTP endpoints."""
