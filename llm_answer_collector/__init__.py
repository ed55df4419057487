"""
LLM Answer Collector.

Collects answers to generated queries from multiple AI answer-engines, each
reachable through redundant provider backends, with batching, provider
fallback, async job polling, credential pools and self-healing execution
tracking.
"""

__version__ = "0.1.0"
