"""parley -- multi-turn conversation orchestration for LLM providers and tools."""

__version__ = "0.1.0"
