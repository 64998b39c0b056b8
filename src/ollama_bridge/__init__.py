"""ollama-bridge -- Expose a local Ollama server through a public tunnel.

Every request arriving through the tunnel must carry a per-run secret
token; authenticated traffic under ``/api`` is streamed to the local
inference service, including WebSocket upgrades.
"""

__version__ = "0.1.0"
