"""
Core modules for the metering proxy.

This package contains request decoding, attribution, token counting
and the response relay.
"""
