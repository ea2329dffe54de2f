"""Resilience primitives, errors and logging shared by the pipeline."""
