"""SoulyCore HTTP Server.

FastAPI-based HTTP interface over the assistant core.
"""

from .app import create_app, run_server

__all__ = ["create_app", "run_server"]
