"""Feature modules: geo-grid tracking, credits, and scheduling."""
