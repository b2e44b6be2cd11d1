"""asyncpg repositories scoped to the moderation domain."""
