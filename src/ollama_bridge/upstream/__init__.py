"""Upstream inference service helpers."""

from ollama_bridge.upstream.probe import UpstreamProbe

__all__ = ["UpstreamProbe"]
