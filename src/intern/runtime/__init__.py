"""Process runtime helpers for the long-running INTERN service."""
