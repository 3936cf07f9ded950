"""Graph construction, reachability and body rebuilding."""
