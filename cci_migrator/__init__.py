"""Stage-by-stage migration of SAST ignores into asset-level ignore policies, tracked in SQLite."""

__version__ = "0.1.0"

__all__ = ["backup", "cleanup", "execute", "gather", "models", "plan", "retest"]