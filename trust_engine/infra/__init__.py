"""
Infrastructure for the Trust & Compliance Engine.

- database.py: Async engine, session factory and schema creation
- monitoring.py: Prometheus counters, gauges and histograms
"""
