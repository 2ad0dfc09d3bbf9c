"""Core cache components: storage, statistics, readiness and connectivity."""
