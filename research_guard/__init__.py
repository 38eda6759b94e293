"""
Research Guard.

Credit-gated tool orchestration for an LLM research assistant: admission
control, usage metering, webhook verification and tool calling.
"""

__version__ = "0.1.0"
