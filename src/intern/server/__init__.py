"""Local TCP query service and its line protocol."""
