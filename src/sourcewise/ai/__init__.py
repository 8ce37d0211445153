"""AI client, model adapter and tool wiring."""

from .client import AIClient, ClientSettings, OpenAIChatAdapter

__all__ = ["AIClient", "ClientSettings", "OpenAIChatAdapter"]
