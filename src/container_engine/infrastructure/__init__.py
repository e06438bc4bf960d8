"""Infrastructure: configuration, logging, metrics and tracing."""
