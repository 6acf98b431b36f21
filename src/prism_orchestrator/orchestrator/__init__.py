"""Pipeline orchestration, CLI and logging."""
