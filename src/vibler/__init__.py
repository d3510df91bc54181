"""
Vibler resilience core.

Error taxonomy and classification, retry with exponential backoff,
per-dependency circuit breakers, and the HTTP error boundary that turns
failures into stable JSON responses.
"""

__version__ = "0.1.0"
