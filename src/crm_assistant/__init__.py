"""CRM assistant: provider routing, rolling summaries and similarity search for CRM chat."""

__version__ = "0.5.0"
