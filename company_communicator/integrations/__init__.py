"""Directory, Teams and Azure integrations."""
