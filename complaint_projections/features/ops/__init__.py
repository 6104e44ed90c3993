"""Operator endpoints: lag, partitions and dead letters."""
