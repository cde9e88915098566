"""
Escrow app configuration.

Connects the post-commit event signal receivers on startup.
"""

from django.apps import AppConfig


class EscrowConfig(AppConfig):
    """Configuration for the escrow application."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "escrow"
    verbose_name = "Escrow"

    def ready(self) -> None:
        from escrow import signals  # noqa: F401
