"""
Character Card Errors
====================

Exceptions raised inside the conversion pipeline. Handlers catch the
expected ones and turn them into failed ImportResult/ExportResult objects.
"""

from typing import Any, Dict, List, Optional


class CardFormatError(Exception):
    """Base exception for card conversion errors."""
    pass


class DetectionError(CardFormatError):
    """No handler recognized the input."""

    def __init__(self, message: str = "Unsupported format"):
        super().__init__(message)


class CardParseError(CardFormatError):
    """A container could not be decoded."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        self.cause = cause
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ArchiveLimitError(CardParseError):
    """An archive failed its preflight checks."""
    pass


class CardSchemaError(CardFormatError):
    """A decoded record failed structural validation."""

    def __init__(self, errors: List[Dict[str, Any]]):
        self.errors = errors
        super().__init__(self._format_errors())

    def _format_errors(self) -> str:
        lines = ["Card data failed validation:"]
        for error in self.errors:
            loc = " → ".join(str(l) for l in error.get('loc', ()))
            lines.append(f"  • {loc}: {error.get('msg', '')}")
        return "\n".join(lines)


class ExportValidationError(CardFormatError):
    """Export blocked by one or more validation rules."""

    def __init__(self, errors: List[str], warnings: Optional[List[str]] = None):
        self.errors = list(errors)
        self.warnings = list(warnings or [])
        super().__init__("; ".join(self.errors) or "Export validation failed")
