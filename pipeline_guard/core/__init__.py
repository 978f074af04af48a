"""
Core modules for Pipeline Guard.

This package contains the tiered cache, prefetch scheduling, rate and budget
limiting, metrics and alerting, and the pipeline orchestrator.
"""
