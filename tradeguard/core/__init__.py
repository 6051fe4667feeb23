"""Core components: configuration, models, errors, context and the engine."""
