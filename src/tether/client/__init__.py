"""Chat client: session controller and textual UI."""

from tether.client.chat import (
    QUIT_COMMANDS,
    ChatController,
    ChatMessage,
    OutputPoller,
    extract_text,
    extract_tool_names,
)

__all__ = [
    "QUIT_COMMANDS",
    "ChatController",
    "ChatMessage",
    "OutputPoller",
    "extract_text",
    "extract_tool_names",
]
