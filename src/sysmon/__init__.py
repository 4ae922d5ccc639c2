"""
sysmon - bounded host resource monitoring sessions.

This package samples CPU, memory, disk, network and GPU metrics over a
time-bounded session, derives throughput rates from absolute counters,
persists each finished session as a JSON snapshot and computes summary
statistics for reporting.
"""

__version__ = "0.1.0"
