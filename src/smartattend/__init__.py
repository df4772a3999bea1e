"""SmartAttend: multi-method authentication and attendance tracking API."""

__version__ = "1.0.0"
