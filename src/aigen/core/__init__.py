"""Configuration and logging shared by the engine."""
