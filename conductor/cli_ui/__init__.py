"""Rich terminal views for the Conductor CLI."""

from conductor.cli_ui.session_view import ClassificationReport, SessionView

__all__ = [
    "ClassificationReport",
    "SessionView",
]
