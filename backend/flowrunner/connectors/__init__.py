"""Collaborators: data access, blob storage, the LLM endpoint and progress sinks."""
