"""Socket mark (SO_MARK) support, effective on Linux only."""

from __future__ import annotations

import socket
import sys
from dataclasses import dataclass

# Linux value of SO_MARK; older Pythons do not export the constant.
_SO_MARK = getattr(socket, "SO_MARK", 36)
_U32_MAX = 0xFFFF_FFFF


@dataclass(frozen=True)
class SoMark:
    """An optional firewall mark applied to sockets.

    On platforms other than Linux, applying the mark does nothing.
    """

    mark: int | None = None

    def __post_init__(self) -> None:
        if self.mark is None:
            return
        if isinstance(self.mark, bool) or not isinstance(self.mark, int):
            raise ValueError(f"socket mark must be an integer, got {self.mark!r}")
        if not 0 <= self.mark <= _U32_MAX:
            raise ValueError(f"socket mark out of range: {self.mark}")

    def set_mark(self, sock) -> None:
        """Set SO_MARK on ``sock`` if a mark is configured and the platform is Linux.

        Raises OSError when the operating system refuses the option.
        """
        if self.mark is None or not sys.platform.startswith("linux"):
            return
        sock.setsockopt(socket.SOL_SOCKET, _SO_MARK, self.mark)