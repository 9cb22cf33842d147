"""Purchase history, bot-activity detection and flagged purchases."""
