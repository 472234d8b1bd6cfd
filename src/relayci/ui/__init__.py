from .console import Console, get_console, set_console

__all__ = ["Console", "get_console", "set_console"]
