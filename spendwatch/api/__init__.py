"""HTTP API, configuration and the background scheduler."""
