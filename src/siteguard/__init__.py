"""
SiteGuard - request throttling and security monitoring service

A FastAPI-based service layer that rate limits client traffic per
endpoint category, sanitizes security logs and escalates suspicious
activity patterns.
"""

__version__ = "0.1.0"

from .main import app

__all__ = ["app"]
