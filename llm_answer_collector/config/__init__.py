"""Configuration schema, constants and YAML loading."""
