"""
app-runner - Self-hosted dashboard backend for locally staged web apps.

Discovers projects under a data directory, builds them on demand, and
tracks launch counts, ratings and live connected users in real time.
Run the dashboard with:
  apprunner serve --data-dir /data
"""

__version__ = "0.3.0"

__all__ = [
    "__version__",
]
