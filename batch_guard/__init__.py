"""
batch-guard: resilient batch processing for text-generation APIs.

Pools API credentials under a token budget, retries calls with
classification-aware backoff, and checkpoints completed work so long jobs
can be killed and resumed.
"""

__version__ = "0.1.0"
