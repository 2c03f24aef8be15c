"""oneshot — one-off SQL Server backup scheduler."""

__version__ = "0.1.0"
