"""
Core modules for Research Guard.

This package contains pricing, credit admission, webhook verification,
report generation, the tool registry and the conversation orchestrator.
"""
