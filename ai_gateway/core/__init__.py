"""
Core modules for the AI Interaction Gateway.

This package contains token metering and pricing, budget policy,
and the hallucination verification pipeline.
"""
