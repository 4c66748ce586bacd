"""Forum Bridge: incremental, resumable import of a phpBB3 board into a forum API."""

__version__ = "0.1.0"
