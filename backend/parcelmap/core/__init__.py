"""Settings, data-source registry, error types and logging setup."""
