"""Command-line interface (``complaint-projections``)."""
