"""
Proxy layer of the AI Interaction Gateway.

This package contains the request lifecycle, upstream forwarding with
retry, and the FastAPI application that exposes them.
"""
