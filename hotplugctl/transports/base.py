"""Control-channel interfaces."""

from __future__ import annotations

from typing import Any, Protocol


class Channel(Protocol):
    vm_id: str

    def call(self, command: str, arguments: dict[str, Any] | None = None) -> Any:
        """Send one command and return the decoded ``return`` member of its reply."""

    def close(self) -> None:
        """Release the underlying connection."""
