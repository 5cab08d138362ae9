"""Discovery jobs: seed and re-prioritize queue rows from the replica."""
