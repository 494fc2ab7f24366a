"""Execution queue, resource-bounded executor and worker pool."""
