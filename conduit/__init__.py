"""conduit -- provider-agnostic LLM gateway, tool loop and context compaction."""

__version__ = "0.1.0"
