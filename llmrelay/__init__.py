"""
llmrelay - Multi-backend LLM request routing

Routes each request to the best available backend for its complexity, with
per-backend retries, circuit breakers and an ordered fallback chain.
"""

__version__ = "0.1.0"
