"""notionbot — Discord mention bot backed by Notion search and GPT answers."""

__version__ = "1.0.0"
