"""Error types raised by the sheet pipeline."""
from __future__ import annotations


class SheetAnimatorError(RuntimeError):
    """Base class for pipeline failures."""


class InvalidGridError(SheetAnimatorError):
    """Raised when cols/rows are not positive integers or padding is negative."""


class InvalidSliceAreaError(SheetAnimatorError):
    """Raised when padding and shift leave no area to slice."""


class ImageDecodeError(SheetAnimatorError):
    """Raised when input bytes cannot be decoded into an RGBA buffer."""


class ExportError(SheetAnimatorError):
    """Raised when a frame sequence cannot be encoded.

    ``format_name`` names the container that failed (``"gif"``, ``"apng"``, ``"zip"``).
    """

    def __init__(self, format_name: str, message: str) -> None:
        super().__init__(f"{format_name.upper()} export failed: {message}")
        self.format_name = format_name
