"""Operator-facing console output.

Everything the operator needs to connect a client (URLs, token, QR code)
is printed to stdout. Diagnostics go through logging instead; this is
the only place the secret token is ever written out.
"""

from __future__ import annotations

import io
import json
import sys
from typing import TextIO

import qrcode

from ollama_bridge.domain.models import Session


def connection_payload(session: Session) -> str:
    """JSON a client scans to connect: ``{"url": ..., "token": ...}``."""
    return json.dumps({"url": session.public_url, "token": session.secret_token})


def render_qr(data: str) -> str:
    qr = qrcode.QRCode(border=1)
    qr.add_data(data)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()


class ConsoleDisplay:
    """Prints status lines and connection details to the terminal."""

    def __init__(self, stream: TextIO | None = None, show_qr: bool = False) -> None:
        self._stream = stream or sys.stdout
        self._show_qr = show_qr

    def _print(self, text: str = "") -> None:
        print(text, file=self._stream, flush=True)

    def status(self, message: str) -> None:
        self._print(message)

    def error(self, message: str) -> None:
        self._print(f"Error: {message}")

    def connection_details(self, session: Session) -> None:
        self._print()
        self._print("Ollama Bridge is running!")
        self._print()
        self._print("Connection details:")
        self._print(f"  URL:    {session.public_url}")
        self._print(f"  Token:  {session.secret_token}")
        self._print(f"  Local:  {session.local_url}")
        if self._show_qr:
            self._print()
            self._print("Scan to connect:")
            self._print(render_qr(connection_payload(session)))
        self._print()
        self._print("Press Ctrl+C to stop the bridge")
