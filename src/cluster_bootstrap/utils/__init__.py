# ABOUTME: Utilities package initialization for cluster-bootstrap
# ABOUTME: Contains shared logging and audit helpers

"""
cluster-bootstrap Utilities Package

Shared utilities:
    - logging.py: Structured logging with run IDs and a change audit trail
"""
