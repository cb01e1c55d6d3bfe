"""Built-in node handlers registered by :func:`flowrunner.runtime.registry.default_registry`."""
