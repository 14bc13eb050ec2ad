"""Terminal coding agent backed by Azure OpenAI."""
