"""Project folders, folder chats and background indexing for Gemini."""

__version__ = "0.1.0"
