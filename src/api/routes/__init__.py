"""API routes."""

from . import flashcards, ops

__all__ = ["flashcards", "ops"]
