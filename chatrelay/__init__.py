"""ChatRelay: streaming chat orchestration in front of OpenAI-compatible APIs."""

__version__ = "0.3.0"
