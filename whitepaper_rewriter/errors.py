from __future__ import annotations


class WhitepaperRewriterError(Exception):
    """Base class for errors raised by the rewriter."""


class EmptySheetError(WhitepaperRewriterError, ValueError):
    """The source grid has no data rows."""


class InvalidInputError(WhitepaperRewriterError, ValueError):
    """Headers, batch size or row data cannot be processed."""


class BatchError(WhitepaperRewriterError, RuntimeError):
    """A single batch could not be rewritten; recovered per batch."""


class BatchTransportError(BatchError):
    """The rewrite call failed (network, timeout, non-2xx)."""


class BatchParseError(BatchError):
    """The rewrite response is not the expected ``{"rows": [...]}`` shape."""


class LogWriteError(WhitepaperRewriterError, RuntimeError):
    """A revision log entry could not be persisted."""
