"""Chirp realtime building blocks."""
