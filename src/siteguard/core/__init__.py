"""
Core security components.

This package contains the request-throttling and monitoring services:
- Key-value store with in-process fallback
- Fixed-window rate limiter and its HTTP guard
- Sanitizing secure logger and log sinks
- Security event monitor
- Metrics collection and background scheduling
"""
