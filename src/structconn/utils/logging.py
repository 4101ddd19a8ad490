"""
User-facing console messages for connectome runs.

Module-level ``logging`` loggers carry diagnostics. ConsoleLogger prints the
short progress report a user follows while a session is processed: one
header per session, one line per pipeline stage and a closing summary.
"""

from __future__ import annotations

from enum import Enum


class MessageType(Enum):
    """Symbols prefixed to console messages."""

    INFO = "·"
    SUCCESS = "✓"
    WARNING = "⚡"
    ERROR = "✗"
    STAGE = "→"


class ConsoleLogger:
    """
    Console reporter for pipeline progress.

    Parameters
    ----------
    log_level : int, default=1
        Verbosity level:
        - 0: Silent (no output)
        - 1: Standard (session header, stages, summaries)
        - 2: Verbose (also per-stage details)
    width : int, default=70
        Width for section headers
    indent : str, default="  "
        Indentation string for nested messages

    Examples
    --------
    >>> console = ConsoleLogger(log_level=1)
    >>> console.section("sub-01 tp1 -> session")
    ======================================================================
    sub-01 tp1 -> session
    ======================================================================

    >>> console.stage("Tracking masks", 1, 6)
    →  [1/6] Tracking masks

    >>> console.success("Masks ready", details={"wm_voxels": 184233})
    ✓ Masks ready
      - wm_voxels: 184,233
    """

    def __init__(self, log_level: int = 1, width: int = 70, indent: str = "  "):
        self.log_level = log_level
        self.width = width
        self.indent = indent

    def _print(self, message: str, min_level: int = 1) -> None:
        if self.log_level >= min_level:
            print(message, flush=True)

    def section(self, title: str) -> None:
        """Print a header framed by separator lines."""
        separator = "=" * self.width
        self._print(f"\n{separator}")
        self._print(title)
        self._print(separator)

    def stage(self, name: str, index: int | None = None, total: int | None = None) -> None:
        """Announce a pipeline stage, optionally numbered."""
        counter = f"[{index}/{total}] " if index is not None and total is not None else ""
        self._print(f"{MessageType.STAGE.value}  {counter}{name}")

    def info(self, message: str, indent_level: int = 0, verbose: bool = False) -> None:
        """
        Print an informational message.

        Parameters
        ----------
        message : str
            Information message
        indent_level : int, default=0
            Indentation level
        verbose : bool, default=False
            Only show at log_level=2.
        """
        indent = self.indent * indent_level
        self._print(f"{indent}{MessageType.INFO.value}  {message}", min_level=2 if verbose else 1)

    def success(self, message: str, details: dict | None = None, indent_level: int = 0) -> None:
        """Print a success message, followed by ``key: value`` detail lines."""
        indent = self.indent * indent_level
        self._print(f"{indent}{MessageType.SUCCESS.value} {message}")
        if details:
            self._details(details, indent_level + 1, float_format=".2f")

    def warning(self, message: str, indent_level: int = 0) -> None:
        indent = self.indent * indent_level
        self._print(f"{indent}{MessageType.WARNING.value}  {message}")

    def error(self, message: str, indent_level: int = 0) -> None:
        indent = self.indent * indent_level
        self._print(f"{indent}{MessageType.ERROR.value} {message}")

    def result_summary(self, title: str, metrics: dict, indent_level: int = 0) -> None:
        """
        Print a titled block of metrics.

        Examples
        --------
        >>> console.result_summary("Streamlines", {"tracked": 120000, "in graph": 48211})
        Streamlines:
          - tracked: 120,000
          - in graph: 48,211
        """
        indent = self.indent * indent_level
        self._print(f"{indent}{title}:")
        self._details(metrics, indent_level + 1, float_format=".4f")

    def _details(self, values: dict, indent_level: int, float_format: str) -> None:
        detail_indent = self.indent * indent_level
        for key, value in values.items():
            if isinstance(value, float):
                formatted_value = format(value, float_format)
            elif isinstance(value, int) and not isinstance(value, bool) and value >= 1000:
                formatted_value = f"{value:,}"
            else:
                formatted_value = str(value)
            self._print(f"{detail_indent}- {key}: {formatted_value}")
