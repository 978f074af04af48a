"""
Pipeline Guard.

Cache-and-orchestration layer for cost-metered content generation providers.
"""

__version__ = "0.1.0"
