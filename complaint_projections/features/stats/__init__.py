"""Tenant-scoped read-model endpoints."""
