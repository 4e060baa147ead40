"""Provider orchestration, background queue and CLI."""
