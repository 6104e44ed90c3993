"""Infrastructure adapters: databases, broker, tenancy, logging, metrics."""
