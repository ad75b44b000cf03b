"""Request-path caching and quota/rate-limit enforcement core."""

__version__ = "0.1.0"
