"""Configuration, data models and the response envelope."""
