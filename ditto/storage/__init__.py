"""Storage - project persistence."""
