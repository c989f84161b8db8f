"""Durable file uploads with asynchronous AI analysis."""

__version__ = "0.1.0"
