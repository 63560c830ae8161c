"""HTTP clients for external ranking providers."""
