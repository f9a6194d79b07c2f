"""Prometheus instrumentation for the provisioning engine."""
