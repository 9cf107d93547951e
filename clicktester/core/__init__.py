"""Execution engines, task building and result reductions."""
