"""
Metered Proxy.

Reverse proxy for chat-completion APIs that attributes every call to a user
and project and records its token usage.
"""

__version__ = "0.1.0"
