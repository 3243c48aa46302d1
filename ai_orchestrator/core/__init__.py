"""
Core modules for AI Orchestrator.

This package contains prompt composition, response validation,
quota guardrails, pricing and the per-turn pipeline.
"""
