# ABOUTME: Utilities package initialization for the image updater
# ABOUTME: Contains shared utilities for Argo CD access, gating, metrics and logging

"""
Image Updater Utilities Package

Shared utilities:
    - client.py: Argo CD API client wrapper with retry logic
    - sync.py: Argo CD sync sessions (wait for revision, then sync)
    - safety.py: IP allowlist and shared secret checks
    - metrics.py: Prometheus instrumentation
    - logging.py: Structured logging with correlation IDs
"""
