"""Local networking helpers."""

from ollama_bridge.net.ports import PortAllocator

__all__ = ["PortAllocator"]
