"""
Round-Robin dispatcher package.

Simulates single-CPU Round-Robin scheduling with a quantum of one tick,
driving one independently running worker per job.
"""

__all__ = ["cli"]
