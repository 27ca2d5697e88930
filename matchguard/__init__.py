"""MatchGuard: adaptive login defense and session integrity."""

__version__ = "1.0.0"
