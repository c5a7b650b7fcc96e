"""OpenAI-compatible chat gateway routing requests across upstream providers.

Model listing, provider-prefixed resolution, and buffered or streamed chat
completions.
"""

__all__ = []
