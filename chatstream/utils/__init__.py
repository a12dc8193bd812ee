"""
UTILITIES PACKAGE
=================

Helpers used by the services (no HTTP, no business logic):

  retry - with_retry(fn): calls fn(); on failure retries with exponential backoff.
"""
