"""Domain types: jobs, policies, audit entries, outbox entries and events."""
