"""Core orchestration engine: configuration, scripts, arguments, processes."""
