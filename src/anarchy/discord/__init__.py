"""Discord integration: slash commands, embeds, views, and case channel management."""
