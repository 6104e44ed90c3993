"""FastAPI application: read-model and operator HTTP surface."""
