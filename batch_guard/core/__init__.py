"""
Core modules for batch-guard.

This package contains the credential pool and rate limiter, the retrying
call orchestrator, and the batch job driver.
"""
