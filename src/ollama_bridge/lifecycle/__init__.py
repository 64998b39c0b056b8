"""Process lifecycle: startup sequence, signals and shutdown."""

from ollama_bridge.lifecycle.controller import LifecycleController, build_server

__all__ = ["LifecycleController", "build_server"]
